"""
Canonicalization / Repair Engine
================================
Deterministic rewrite passes over a validated Plan, each gated on a shape
that is unambiguous from the registry and the plan alone.

Order matters where passes do not commute:
- multiplier tables are folded before state flags are ensured, and both
  before dead-param detection (the folded buff's guard must survive when a
  row sets its flag);
- array picks are inferred before short variant arrays are expanded, and
  titles are de-duplicated after expansion;
- double counting is checked before multiplier rebasing.

Every pass is idempotent, so `repair(repair(p)) == repair(p)`.
"""

import logging
from typing import List, Tuple

from calcgen.models.plan import Plan
from calcgen.models.request import CalcRequest
from calcgen.repair import arrays, buffs, expressions, guards, multiplier_tables, titles
from calcgen.repair.context import RepairContext, RepairPass

logger = logging.getLogger(__name__)

PASSES: List[Tuple[str, RepairPass]] = [
    ("multiplier_tables", multiplier_tables.fold_multiplier_tables),
    ("state_flags", multiplier_tables.ensure_state_flags),
    ("sr_ratio", expressions.drop_sr_percent_scaling),
    ("crit_fixup", expressions.remove_manual_crit),
    ("repeat_count", expressions.fix_repeat_count),
    ("array_pick", arrays.infer_array_pick),
    ("array_expand", arrays.expand_variant_arrays),
    ("title_dedupe", titles.dedupe_titles),
    ("dead_params", guards.drop_dead_params),
    ("double_count", buffs.drop_double_counted),
    ("multi_delta", buffs.rebase_multipliers),
    ("resist_sign", buffs.fix_resist_sign),
]


def repair_with_context(request: CalcRequest, plan: Plan) -> Tuple[Plan, RepairContext]:
    ctx = RepairContext(request=request)
    for name, repair_pass in PASSES:
        plan, ctx = repair_pass(plan, ctx)
    if ctx.notes:
        logger.info(f"Repaired plan for {request.name}: {len(ctx.notes)} fix(es) applied")
    return plan, ctx


def repair(request: CalcRequest, plan: Plan) -> Plan:
    return repair_with_context(request, plan)[0]
