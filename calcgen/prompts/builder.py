import json
from typing import List, Optional

from calcgen.models.message import Message
from calcgen.models.plan import MAX_BUFFS, MAX_DETAILS
from calcgen.models.request import CalcRequest
from calcgen.prompts import templates
from calcgen.utils.text import normalize_prompt_text, shorten_text

GAME_LABELS = {"gs": "Genshin Impact (gs)", "sr": "Honkai: Star Rail (sr)"}

_SLOT_ORDER = ("a", "e", "q", "t", "me", "me2", "mt", "mt1", "mt2")


def _ordered_slots(request: CalcRequest) -> List[str]:
    registry = request.registry
    slots = [s for s in registry.slots if registry.tables(s)]
    return sorted(slots, key=lambda s: (_SLOT_ORDER.index(s) if s in _SLOT_ORDER else 99, s))


def _json_line(slot: str, value, max_len: int) -> str:
    return f"- {slot}: {shorten_text(json.dumps(value, ensure_ascii=False), max_len)}"


def build_plan_prompt(request: CalcRequest, hint: Optional[str] = None, attempt: int = 0) -> str:
    """User message for one generator attempt. Sections with no data are left out."""
    registry = request.registry
    slots = _ordered_slots(request)

    sections = [
        templates.PLAN_TASK_INSTRUCTION.format(
            name=request.name,
            game_label=GAME_LABELS[request.game],
            elem=request.elem or "unknown",
            weapon=request.weapon or "unknown",
            table_lines="\n".join(_json_line(s, registry.tables(s), 1200) for s in slots) or "- (none)",
        )
    ]

    sample_lines = [
        _json_line(s, request.table_samples[s], 500) for s in slots if request.table_samples.get(s)
    ]
    if sample_lines:
        sections.append(templates.SAMPLE_SECTION.format(sample_lines="\n".join(sample_lines)))

    text_lines = [
        _json_line(s, request.table_text_samples[s], 600) for s in slots if request.table_text_samples.get(s)
    ]
    if text_lines:
        sections.append(templates.TEXT_SAMPLE_SECTION.format(text_lines="\n".join(text_lines)))

    unit_lines = []
    for s in slots:
        pairs = [
            [table, shorten_text(normalize_prompt_text(unit), 40)]
            for table, unit in (request.table_units.get(s) or {}).items()
            if normalize_prompt_text(unit)
        ][:12]
        if pairs:
            unit_lines.append(_json_line(s, pairs, 800))
    if unit_lines:
        sections.append(templates.UNIT_SECTION.format(unit_lines="\n".join(unit_lines)))

    desc_lines = []
    for s in slots:
        text = normalize_prompt_text(registry.description(s))
        if text:
            desc_lines.append(f"- {s}: {shorten_text(text, 900)}")
    if desc_lines:
        sections.append(templates.DESCRIPTION_SECTION.format(desc_lines="\n".join(desc_lines)))

    hint_lines = []
    for h in request.buff_hints:
        text = normalize_prompt_text(h)
        if text:
            hint_lines.append(f"- {shorten_text(text, 520)}")
    if hint_lines:
        sections.append(templates.BUFF_HINT_SECTION.format(hint_lines="\n".join(hint_lines[:40])))

    game_rules = templates.GS_RULES if request.game == "gs" else templates.SR_RULES
    sections.append(templates.FORMULA_RULES.format(game_rules=game_rules))
    sections.append(templates.SCHEMA_INSTRUCTION.format(max_details=MAX_DETAILS, max_buffs=MAX_BUFFS))

    if hint:
        sections.append(templates.RETRY_INSTRUCTION.format(hint=shorten_text(hint.strip(), 1500)))
    if attempt > 0:
        sections.append(templates.STRICT_FORMAT_REMINDER.format())

    return "\n".join(section.strip("\n") for section in sections) + "\n"


def build_messages(request: CalcRequest, hint: Optional[str] = None, attempt: int = 0) -> List[Message]:
    return [
        Message(role="system", content=templates.CALC_PLAN_SYSTEM_PROMPT.strip()),
        Message(role="user", content=build_plan_prompt(request, hint=hint, attempt=attempt)),
    ]
