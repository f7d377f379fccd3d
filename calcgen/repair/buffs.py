"""Repairs of modifier rows (buff data)."""

import re
from typing import Tuple

from calcgen.models.plan import Plan
from calcgen.prefabs.formula import referenced_tables
from calcgen.prefabs.scanner import strip_outer_parens
from calcgen.repair.context import RepairContext, consumed_tables

# Band in which a multiplier value is read as "total percent" (137.9 == 37.9% extra)
TOTAL_PERCENT_BAND = (100.0, 400.0)

_BARE_TABLE_REF_RE = re.compile(
    r"""^talent\.([A-Za-z][A-Za-z0-9]*)\[\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')\s*\]$"""
)
_RESIST_KEY_RE = re.compile(r"^(enemyDef|enemyIgnore|ignore|kx|fykx|(a|a2|a3|e|q|t|me|mt|nightsoul|elation)(Def|Ignore))$")


def _map_buff_data(plan: Plan, ctx: RepairContext, fn) -> Tuple[Plan, RepairContext]:
    """Applies fn(buff, ctx) -> (buff or None, ctx) to every buff row; None drops the row."""
    buffs = []
    changed = False
    for b in plan.buffs:
        if isinstance(b, str):
            buffs.append(b)
            continue
        new_b, ctx = fn(b, ctx)
        if new_b is not b:
            changed = True
        if new_b is not None:
            buffs.append(new_b)
    if not changed:
        return plan, ctx
    return plan.model_copy(update={"buffs": buffs}), ctx


def drop_double_counted(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """
    A `*Plus` value that reads a table some detail row already uses as its
    multiplier adds that damage a second time.
    """
    used = consumed_tables(plan)

    def fix(b, ctx):
        data = {}
        for key, value in b.data.items():
            if isinstance(value, str) and (key.endswith("Plus") or key == "fybase"):
                overlap = [ref for ref in referenced_tables(value) if ref in used]
                if overlap:
                    ctx = ctx.note("double_count", f"{b.title}: {key} re-derives talent.{overlap[0][0]}[{overlap[0][1]!r}]")
                    continue
            data[key] = value
        if len(data) == len(b.data):
            return b, ctx
        if not data:
            return None, ctx
        return b.model_copy(update={"data": data}), ctx

    return _map_buff_data(plan, ctx, fix)


def rebase_multipliers(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """`*Multi` keys hold the delta from 100%; values in the total-percent band are rebased."""
    low, high = TOTAL_PERCENT_BAND
    registry = ctx.registry

    def fix(b, ctx):
        data = dict(b.data)
        rebased = list(b.rebased_keys)
        for key, value in b.data.items():
            if not key.endswith("Multi") and key != "multi":
                continue
            if key in rebased:
                continue
            if isinstance(value, float):
                if low <= value <= high:
                    data[key] = round(value - 100.0, 6)
                    rebased.append(key)
                    ctx = ctx.note("multi_delta", f"{b.title}: {key} {value:g} -> {data[key]:g}")
                continue
            m = _BARE_TABLE_REF_RE.match(strip_outer_parens(value))
            if not m:
                continue
            slot, table = referenced_tables(value)[0]
            sample = registry.scalar_sample(slot, table)
            if sample is not None and low <= sample <= high:
                # Clamped: a total under 100% is no bonus, and small samples must not read as -100
                data[key] = f"max({strip_outer_parens(value)} - 100, 0)"
                rebased.append(key)
                ctx = ctx.note("multi_delta", f"{b.title}: {key} table sample {sample:g} is a total; subtracting 100")
        if rebased == b.rebased_keys:
            return b, ctx
        return b.model_copy(update={"data": data, "rebased_keys": rebased}), ctx

    return _map_buff_data(plan, ctx, fix)


def fix_resist_sign(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """Resistance/defence reductions are stored as positive numbers."""

    def fix(b, ctx):
        data = dict(b.data)
        for key, value in b.data.items():
            if not _RESIST_KEY_RE.match(key):
                continue
            if isinstance(value, float) and value < 0:
                data[key] = -value
            elif isinstance(value, str) and value.startswith("-"):
                inner = value[1:].strip()
                if _BARE_TABLE_REF_RE.match(strip_outer_parens(inner)):
                    data[key] = strip_outer_parens(inner)
            if data[key] != value:
                ctx = ctx.note("resist_sign", f"{b.title}: {key} {value!r} -> {data[key]!r}")
        if data == b.data:
            return b, ctx
        return b.model_copy(update={"data": data}), ctx

    return _map_buff_data(plan, ctx, fix)
