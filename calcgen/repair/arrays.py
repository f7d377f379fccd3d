"""
Array tables that hold one value per variant (tap/hold, low/high plunge,
hit 1/2/3) rather than a structured [pct, flat] / [pct, hits] pair.
"""

import re
from typing import Optional, Tuple

from calcgen.models.plan import MAX_DETAILS, DamageDetail, Plan
from calcgen.repair.context import RepairContext
from calcgen.services.table_schema import infer_array_table_schema

_CN_SEGMENTS = {"首": 0, "一": 0, "二": 1, "三": 2, "四": 3, "五": 4, "六": 5, "七": 6, "八": 7, "九": 8, "十": 9}

MAX_EXPAND_LENGTH = 3
# Variants of one attack have comparable magnitudes; [pct, flat] pairs do not
MAX_VARIANT_SPREAD = 20.0


def infer_pick_from_title(title: str, length: int) -> Optional[int]:
    if length < 2:
        return None
    t = re.sub(r"\s+", " ", title).strip().lower()

    if re.search(r"(点按|\btap\b|\bpress\b)", t):
        return 0
    if re.search(r"(长按|\bhold\b|\bheld\b)", t):
        return min(1, length - 1)
    if re.search(r"(低空|\blow plunge\b|\blow\b)", t):
        return 0
    if re.search(r"(高空|\bhigh plunge\b|\bhigh\b)", t):
        return min(1, length - 1)

    seg = re.search(r"(首|一|二|三|四|五|六|七|八|九|十)段", t)
    if seg:
        return min(length - 1, _CN_SEGMENTS[seg.group(1)])
    seg = re.search(r"(\d{1,2})\s*段|\bhit\s*(\d{1,2})\b|\b(\d{1,2})(?:st|nd|rd|th)[- ]hit\b", t)
    if seg:
        n = int(next(g for g in seg.groups() if g))
        if 1 <= n <= 20:
            return min(length - 1, n - 1)

    layer = re.search(r"(\d{1,2})\s*(层|stacks?\b)", t)
    if layer:
        n = int(layer.group(1))
        if 0 <= n < length:
            return n

    if re.search(r"(满层|满辉|最高|最大|\bmax\b|\bfull\b)", t):
        return length - 1
    return None


def _is_variant_candidate(d, ctx: RepairContext) -> bool:
    if not isinstance(d, DamageDetail) or d.dmg_expr or d.pick is not None:
        return False
    sample = ctx.registry.array_sample(d.talent, d.table)
    if not sample or len(sample) < 2:
        return False
    return infer_array_table_schema(ctx.registry, d.talent, d.table) is None


def infer_array_pick(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    details = []
    changed = False
    for d in plan.details:
        if _is_variant_candidate(d, ctx):
            sample = ctx.registry.array_sample(d.talent, d.table)
            pick = infer_pick_from_title(d.title, len(sample))
            if pick is not None:
                ctx = ctx.note("array_pick", f"{d.title}: pick {pick} of talent.{d.talent}[{d.table!r}]")
                d = d.model_copy(update={"pick": pick})
                changed = True
        details.append(d)
    if not changed:
        return plan, ctx
    return plan.model_copy(update={"details": details}), ctx


def _params_signature(params) -> Tuple:
    return tuple(sorted((k, repr(v)) for k, v in params.items()))


def expand_variant_arrays(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """
    gs: one row per element of a short variant array, so each variant gets
    its own showcase line. Duplicated rows over the same table collapse
    into the expanded group.
    """
    if ctx.game != "gs":
        return plan, ctx

    out = []
    seen_groups = set()
    changed = False
    for d in plan.details:
        if not _is_variant_candidate(d, ctx):
            out.append(d)
            continue
        sample = ctx.registry.array_sample(d.talent, d.table)
        low, high = min(abs(v) for v in sample), max(abs(v) for v in sample)
        if len(sample) > MAX_EXPAND_LENGTH or low <= 0 or high / low > MAX_VARIANT_SPREAD:
            out.append(d)
            continue
        group = (d.talent, d.table, d.routing_key, d.ele, _params_signature(d.params))
        changed = True
        if group in seen_groups:
            ctx = ctx.note("array_expand", f"dropped duplicate row {d.title}")
            continue
        seen_groups.add(group)
        for i in range(len(sample)):
            out.append(d.model_copy(update={"title": f"{d.title} ({i + 1})", "pick": i}))
        ctx = ctx.note("array_expand", f"{d.title}: split into {len(sample)} variant rows")

    if not changed:
        return plan, ctx
    return plan.model_copy(update={"details": out[:MAX_DETAILS]}), ctx
