"""
Heuristic planner.

Builds a raw plan from table names alone, for when no generator is
configured or every generator attempt failed. The output has the same
shape the generator returns and goes through the same validate / repair /
render / check pipeline.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from calcgen.models.request import CalcRequest
from calcgen.models.vocabulary import DEFAULT_MAIN_ATTR
from calcgen.utils.text import normalize_prompt_text

logger = logging.getLogger(__name__)

MAX_HEURISTIC_DETAILS = 12

_DAMAGE_RE = re.compile(r"(伤害|\bdmg\b|damage)", re.IGNORECASE)
_BUFF_LIKE_RE = re.compile(
    r"(提高|提升|增加|降低|减少|加成|增伤|穿透|无视|概率|几率|命中|抵抗|击破效率|削韧|冷却|能量|回合数|持续时间"
    r"|bonus|increase|reduction|reduce|boost|\bres\b|penetration|ignore|chance|\bcd\b|cooldown|energy|duration|turns?\b)",
    re.IGNORECASE,
)
_HEAL_RE = re.compile(r"(治疗|回复|healing|\bheal)", re.IGNORECASE)
_HP_RE = re.compile(r"(生命上限|生命值上限|最大生命值|生命值|max hp|\bhp\b)", re.IGNORECASE)
_SHIELD_RE = re.compile(r"(护盾|shield)", re.IGNORECASE)
_DEF_RE = re.compile(r"(防御力|\bdef\b|defense)", re.IGNORECASE)
_PCT_TABLE_RE = re.compile(r"(百分比|percent|%)", re.IGNORECASE)
_FLAT_TABLE_RE = re.compile(r"(固定值|flat)", re.IGNORECASE)
_COUNTER_RE = re.compile(r"(反击|counter)", re.IGNORECASE)
_CATALYST_RE = re.compile(r"(catalyst|法器)", re.IGNORECASE)


def is_buff_like(table: str) -> bool:
    return bool(_BUFF_LIKE_RE.search(table))


def pick_damage_table(tables: List[str]) -> Optional[str]:
    """First table that reads as a damage multiplier; buff/cooldown/energy tables never qualify."""
    for table in tables:
        if _DAMAGE_RE.search(table) and not is_buff_like(table):
            return table
    return None


def _is_heal_like(text: str) -> bool:
    return bool(_HEAL_RE.search(text)) or ("恢复" in text and bool(_HP_RE.search(text)))


def _support_row(slot: str, tables: List[str], kind: str, title: str) -> Optional[Dict[str, Any]]:
    marker = _SHIELD_RE if kind == "shield" else _HEAL_RE
    candidates = [t for t in tables if marker.search(t) and not is_buff_like(t)] or tables
    table = next((t for t in candidates if _PCT_TABLE_RE.search(t)), None)
    table = table or next((t for t in candidates if _FLAT_TABLE_RE.search(t)), None)
    table = table or next((t for t in candidates if marker.search(t)), None)
    if not table:
        return None
    joined = "|".join(tables)
    if _HP_RE.search(joined):
        stat = "hp"
    elif _DEF_RE.search(joined):
        stat = "defense"
    else:
        stat = "hp" if kind == "heal" else "defense"
    return {"title": title, "kind": kind, "talent": slot, "table": table, "key": slot, "stat": stat}


def _gs_plan(request: CalcRequest) -> Dict[str, Any]:
    registry = request.registry
    details = []
    e = pick_damage_table(registry.tables("e"))
    q = pick_damage_table(registry.tables("q"))
    a = pick_damage_table(registry.tables("a"))
    if e:
        details.append({"title": "Skill DMG", "talent": "e", "table": e, "key": "e"})
    if q:
        details.append({"title": "Burst DMG", "talent": "q", "table": q, "key": "q"})
    if a:
        row = {"title": "Normal Attack DMG", "talent": "a", "table": a, "key": "a"}
        if not _CATALYST_RE.search(request.weapon or ""):
            row["ele"] = "phy"
        details.append(row)
    return {
        "main_attr": DEFAULT_MAIN_ATTR["gs"],
        "def_dmg_key": "e" if e else "q" if q else "a",
        "details": details,
        "buffs": [],
    }


def _sr_plan(request: CalcRequest) -> Dict[str, Any]:
    registry = request.registry
    details: List[Dict[str, Any]] = []

    a = pick_damage_table(registry.tables("a"))
    if a:
        details.append({"title": "Basic ATK DMG", "talent": "a", "table": a, "key": "a"})

    labels = {"e": "Skill", "q": "Ultimate"}
    for slot in ("e", "q"):
        tables = registry.tables(slot)
        desc = normalize_prompt_text(registry.description(slot))
        row = None
        if _SHIELD_RE.search(desc) or any(_SHIELD_RE.search(t) for t in tables):
            row = _support_row(slot, tables, "shield", f"{labels[slot]} Shield")
        elif _is_heal_like(desc) or any(_HEAL_RE.search(t) for t in tables):
            row = _support_row(slot, tables, "heal", f"{labels[slot]} Healing")
        if row is None:
            table = pick_damage_table(tables)
            if table:
                row = {"title": f"{labels[slot]} DMG", "talent": slot, "table": table, "key": slot}
        if row:
            details.append(row)

    # Extra damage tables of the ultimate (e.g. follow-up or per-turn damage)
    q_main = next((d["table"] for d in details if d["talent"] == "q" and "kind" not in d), None)
    for table in registry.tables("q"):
        if len(details) >= MAX_HEURISTIC_DETAILS:
            break
        if table == q_main or not _DAMAGE_RE.search(table) or is_buff_like(table):
            continue
        details.append({"title": table.replace("回合开始伤害", "附加伤害"), "talent": "q", "table": table, "key": "q"})

    t = pick_damage_table(registry.tables("t"))
    if t and len(details) < MAX_HEURISTIC_DETAILS:
        title = "Counter DMG" if _COUNTER_RE.search(t) else "Talent DMG"
        details.append({"title": title, "talent": "t", "table": t, "key": "t"})

    desc_text = " ".join(normalize_prompt_text(registry.description(s)) for s in ("e", "q"))
    main_attr = ["atk", "cpct", "cdmg"]
    if any(d.get("kind") == "heal" for d in details) or _HP_RE.search(desc_text):
        main_attr.append("hp")
    if any(d.get("kind") == "shield" for d in details) or _DEF_RE.search(desc_text):
        main_attr.append("defense")

    slots = {d["talent"] for d in details}
    def_dmg_key = next((s for s in ("e", "q", "a") if s in slots), "e")
    return {"main_attr": ",".join(main_attr), "def_dmg_key": def_dmg_key, "details": details, "buffs": []}


def _last_resort_row(request: CalcRequest) -> Optional[Dict[str, Any]]:
    """Any non-buff table of the skill, burst or basic attack, in that order."""
    registry = request.registry
    for slot in ("e", "q", "a"):
        for table in registry.tables(slot):
            if not is_buff_like(table):
                return {"title": table, "talent": slot, "table": table, "key": slot}
    return None


def heuristic_plan(request: CalcRequest) -> Dict[str, Any]:
    plan = _gs_plan(request) if request.game == "gs" else _sr_plan(request)
    if not plan["details"]:
        row = _last_resort_row(request)
        if row:
            logger.warning(f"No damage table recognised for {request.name}; using {row['table']!r}")
            plan["details"].append(row)
            plan["def_dmg_key"] = row["key"]
    logger.info(f"Heuristic plan for {request.name}: {len(plan['details'])} detail row(s)")
    return plan
