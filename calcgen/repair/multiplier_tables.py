"""
Multiplier tables used as damage tables.

A table whose unit reads "% Normal Attack DMG" (or "Elemental Burst DMG",
...) scales damage that is computed elsewhere; reading it directly as a
skill multiplier produces a nonsense row. Such rows become a `<target>Multi`
buff guarded by the state of the skill that owns the table, and a later
pass makes sure some detail row turns that state on.
"""

import re
from typing import Optional, Tuple

from calcgen.models.plan import MAX_BUFFS, MAX_DETAILS, Buff, Plan, TableDetail
from calcgen.models.vocabulary import is_allowed_buff_key
from calcgen.prefabs.formula import referenced_free_vars
from calcgen.repair.context import RepairContext

_UNIT_TARGETS = (
    (re.compile(r"(普通攻击伤害|normal attack dmg|basic atk dmg)", re.IGNORECASE), "a"),
    (re.compile(r"(重击伤害|charged attack dmg)", re.IGNORECASE), "a2"),
    (re.compile(r"(下落攻击伤害|plunging attack dmg|plunge dmg)", re.IGNORECASE), "a3"),
    (re.compile(r"(忆灵技伤害|memosprite skill dmg)", re.IGNORECASE), "me"),
    (re.compile(r"(忆灵天赋伤害|memosprite talent dmg)", re.IGNORECASE), "mt"),
    (re.compile(r"(元素战技伤害|战技伤害|elemental skill dmg|\bskill dmg)", re.IGNORECASE), "e"),
    (re.compile(r"(元素爆发伤害|终结技伤害|elemental burst dmg|ultimate dmg|\bburst dmg)", re.IGNORECASE), "q"),
    (re.compile(r"(天赋伤害|talent dmg)", re.IGNORECASE), "t"),
)

STATE_LABELS = {"a": "Normal Attack", "e": "Skill", "q": "Burst", "t": "Talent"}


def multiplier_target(unit: str) -> Optional[str]:
    """Attack key whose damage a multiplier-unit table scales, or None."""
    if not unit:
        return None
    for pattern, target in _UNIT_TARGETS:
        if pattern.search(unit):
            return target
    return None


def fold_multiplier_tables(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    registry = ctx.registry
    keep = []
    buffs = list(plan.buffs)
    folded = []

    for d in plan.details:
        target = None
        if isinstance(d, TableDetail) and not d.dmg_expr and registry.scalar_sample(d.talent, d.table) is not None:
            target = multiplier_target(registry.unit(d.talent, d.table))
        key = f"{target}Multi" if target else None
        if not key or not is_allowed_buff_key(ctx.game, key):
            keep.append(d)
            continue
        folded.append((d, target, key))

    if not folded or not keep:
        return plan, ctx

    existing_titles = {b.title for _, b in plan.buff_rows()}
    for d, target, key in folded:
        title = f"{d.table}: {STATE_LABELS.get(d.talent, d.talent.upper())} state"
        ctx = ctx.note("multiplier_tables", f'talent.{d.talent}["{d.table}"] scales {target} damage; moved to {key}')
        ctx = ctx.require_flag(d.talent, target)
        if title in existing_titles:
            continue
        existing_titles.add(title)
        buffs.append(
            Buff(
                title=title,
                check=f"params.{d.talent}",
                data={key: f'talent.{d.talent}["{d.table}"]'},
            )
        )

    return plan.model_copy(update={"details": keep, "buffs": buffs[:MAX_BUFFS]}), ctx


def ensure_state_flags(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """Clones one target row per required flag so the guarded buff is shown active."""
    details = list(plan.details)
    for flag, target in ctx.required_flags:
        if any(d.params.get(flag) for d in details):
            continue
        if not any(flag in referenced_free_vars(b.check or "") for _, b in plan.buff_rows()):
            continue
        base = next(
            (d for d in details if isinstance(d, TableDetail) and d.routing_key.split(",")[0] == target),
            None,
        )
        if base is None or len(details) >= MAX_DETAILS:
            continue
        label = STATE_LABELS.get(flag, flag.upper())
        clone = base.model_copy(update={"title": f"{base.title} ({label} state)", "params": {**base.params, flag: True}})
        details.insert(details.index(base) + 1, clone)
        ctx = ctx.note("state_flags", f"added '{clone.title}' with params.{flag}")
    if len(details) == len(plan.details):
        return plan, ctx
    return plan.model_copy(update={"details": details}), ctx
