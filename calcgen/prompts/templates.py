"""
Templates for LLM prompts.
"""

# --- SYSTEM PROMPT (CONSTANT) ---

CALC_PLAN_SYSTEM_PROMPT = """
You are a careful **Game Balance Engineer**.
Your goal is to describe how a character's showcase damage, healing, shielding and reaction numbers are computed from the skill tables you are given.

## CRITICAL INSTRUCTIONS
1. **Output:** Reply with a single JSON object. No markdown, no code fences, no explanations.
2. **Source of Truth:** Only the table names listed by the user exist. Never invent a slot or a table.
3. **Formulas:** Every formula is a single Python expression over the documented names. No statements, no lambdas, no imports.
"""

# --- INSTRUCTIONS (USER MESSAGE) ---

PLAN_TASK_INSTRUCTION = """
Build the calculation plan for **{name}** ({game_label}), element: {elem}, weapon: {weapon}.

## AVAILABLE TABLES
Only these slots and tables may be referenced (`talent.<slot>["<table>"]`):
{table_lines}
"""

SAMPLE_SECTION = """
## SAMPLE VALUES (one level)
Arrays mean the table returns several numbers at runtime.
{sample_lines}
"""

TEXT_SAMPLE_SECTION = """
## DISPLAY TEXT (one level)
{text_lines}
"""

UNIT_SECTION = """
## UNIT HINTS
A unit naming another attack's damage marks a multiplier of that attack, not a damage row.
{unit_lines}
"""

DESCRIPTION_SECTION = """
## SKILL DESCRIPTIONS
{desc_lines}
"""

BUFF_HINT_SECTION = """
## PASSIVES / TIERS / TRACES
{hint_lines}
"""

FORMULA_RULES = """
## FORMULA RULES
- Context names: talent, attr, calc, params, cons, weapon, trees. Buff formulas may also read current_talent.
- Read tables only as `talent.<slot>["<table>"]`, optionally followed by `[<index>]` for array tables.
- `calc(attr.<field>)` takes exactly one `attr.<field>` argument; put any arithmetic outside the call, e.g. `(calc(attr.recharge) - 100) * 0.4`.
- attr fields: atk, hp, defense, mastery, recharge, cpct, cdmg, heal, dmg, phy, shield, speed, effPct, effDef, stance.
- `params.<name>` names are ASCII identifiers. Set a flag in a detail's `params` before guarding on it.
- Helpers: max, min, abs, round, floor, ceil. Operators: arithmetic, comparisons, and/or/not, `x if cond else y`, `in`.
- Custom detail formulas (`dmg_expr`) must return `dmg(x, "key")`, `dmg(x, "key", "ele")`, `dmg.basic(amount, "key"[, "ele"])`, `heal(x)`, `shield(x)`, `reaction("id")` or `{{"dmg": ..., "avg": ...}}`. Arguments are positional; the element is a string literal, never an object.
- Do not multiply by crit rate or crit damage yourself; the engine applies crit.
{game_rules}
"""

GS_RULES = """- Table values are percentages (e.g. 150 means 150%); `to_ratio(x)` divides by 100.
- Amplifying reactions (vaporize, melt, aggravate, spread) and lunar reactions are `ele` values of kind "dmg" rows, not reaction rows.
- Reaction rows (kind "reaction") are for swirl, crystallize, bloom, hyperBloom, burgeon, burning, overloaded, electroCharged, superConduct, shatter.
- Many heal/shield tables exist as "X" and "X2"; prefer "X2" ([percent, flat]).
- `*Multi` buff keys hold the extra percentage over 100% (a table reading 137.9% is written as 37.9)."""

SR_RULES = """- Table values are ratios (e.g. 1.5 means 150%); never multiply talent values by 100 inside dmg_expr.
- Reaction rows (kind "reaction") are for break effects: physicalBreak, fireBreak, iceBreak, lightningBreak, windBreak, quantumBreak, imaginaryBreak, superBreak.
- Damage-over-time and special damage use `ele` values: shock, burn, windShear, bleed, entanglement, skillDot, elation.
- Buff percentages are written as percentages (20 means +20%); convert ratio tables with `* 100` in buff data."""

SCHEMA_INSTRUCTION = """
## JSON SCHEMA
{{
  "main_attr": "atk,cpct,cdmg",
  "def_dmg_key": "e",
  "def_params": {{}},
  "details": [
    {{
      "title": "Skill DMG",
      "kind": "dmg | heal | shield | reaction",
      "talent": "e",
      "table": "<table name from the list>",
      "key": "e",
      "ele": "<optional element tag>",
      "stat": "<optional: atk | hp | defense | mastery>",
      "pick": "<optional array index>",
      "params": {{}},
      "check": "<optional guard expression>",
      "cons": "<optional 1-6>",
      "dmg_expr": "<optional custom formula>",
      "reaction": "<reaction id, kind=reaction only>"
    }}
  ],
  "buffs": [
    {{
      "title": "Passive: ATK +20% after Burst",
      "cons": "<optional 1-6>",
      "tree": "<optional trace index>",
      "check": "params.q",
      "data": {{"atkPct": 20}}
    }}
  ]
}}
Aim for 6 to 12 details (at most {max_details}) covering the main damage rows and their common variants, and at most {max_buffs} buffs.
"""

RETRY_INSTRUCTION = """
## PREVIOUS ATTEMPT FAILED
{hint}
Fix exactly these problems. Keep everything else that was valid. Output only the JSON object.
"""

STRICT_FORMAT_REMINDER = """
Reminder: the reply must start with "{{" and end with "}}". Any text outside the JSON object is discarded.
"""
