"""Rewrites of custom detail formulas (`dmg_expr`)."""

import re
from typing import Optional, Tuple

from calcgen.models.plan import Plan
from calcgen.prefabs.scanner import find_closing, mask_strings
from calcgen.repair.context import RepairContext
from calcgen.services.table_schema import infer_array_table_schema

_TABLE_REF = r"""talent\.[A-Za-z][A-Za-z0-9]*\[\s*(?:"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')\s*\](?:\[\s*\d+\s*\])?"""
_SR_PERCENT_RE = re.compile(rf"({_TABLE_REF})\s*([*/])\s*100(?![\d.])")
_RESULT_PROP_RE = re.compile(r"\.(avg|dmg)\s*\*\s*\(")


def _rewrite_expressions(plan: Plan, ctx: RepairContext, pass_name: str, rewrite) -> Tuple[Plan, RepairContext]:
    details = []
    changed = False
    for d in plan.details:
        if d.dmg_expr:
            new_expr = rewrite(d, d.dmg_expr)
            if new_expr is not None and new_expr != d.dmg_expr:
                ctx = ctx.note(pass_name, f"{d.title}: {d.dmg_expr} -> {new_expr}")
                d = d.model_copy(update={"dmg_expr": new_expr})
                changed = True
        details.append(d)
    if not changed:
        return plan, ctx
    return plan.model_copy(update={"details": details}), ctx


def drop_sr_percent_scaling(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """sr tables already hold ratios (1.5 == 150%); `* 100` / `/ 100` on them is a unit slip."""
    if ctx.game != "sr":
        return plan, ctx
    return _rewrite_expressions(plan, ctx, "sr_ratio", lambda d, expr: _SR_PERCENT_RE.sub(r"\1", expr))


def _strip_crit_factor(expr: str) -> Optional[str]:
    if "attr.cpct" not in expr or "attr.cdmg" not in expr:
        return None
    for _ in range(8):
        masked = mask_strings(expr)
        found = False
        for m in _RESULT_PROP_RE.finditer(masked):
            open_idx = m.end() - 1
            close_idx = find_closing(expr, open_idx)
            if close_idx is None:
                continue
            factor = expr[open_idx:close_idx + 1]
            if "calc(attr.cpct)" not in factor or "calc(attr.cdmg)" not in factor:
                continue
            expr = expr[:m.start()] + ".avg" + expr[close_idx + 1:]
            found = True
            break
        if not found:
            break
    return expr


def remove_manual_crit(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """`.avg * (1 + cpct * cdmg)` counts crit twice: `.avg` is already the expectation."""
    return _rewrite_expressions(plan, ctx, "crit_fixup", lambda d, expr: _strip_crit_factor(expr))


def fix_repeat_count(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """On [pct, hits] tables the hit count multiplies the percentage; it is not a flat addend."""
    registry = ctx.registry

    def rewrite(d, expr):
        for slot in registry.slots:
            for table in registry.tables(slot):
                if table not in expr or not registry.is_array(slot, table):
                    continue
                schema = infer_array_table_schema(registry, slot, table)
                if not schema or schema.kind != "stat_times":
                    continue
                quoted = r"""(?:"%s"|'%s')""" % (re.escape(table), re.escape(table))
                hits = rf"talent\.{slot}\[\s*{quoted}\s*\]\[\s*1\s*\]"
                expr = re.sub(rf"\+\s*({hits})", r"* \1", expr)
        return expr

    return _rewrite_expressions(plan, ctx, "repeat_count", rewrite)
