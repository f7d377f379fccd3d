from typing import Tuple

from calcgen.models.plan import Plan
from calcgen.repair.context import RepairContext


def dedupe_titles(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    """Detail titles are lookup keys for the consumer; repeated ones get a numeric suffix."""
    seen = set()
    details = []
    changed = False
    for d in plan.details:
        title = d.title
        n = 2
        while title in seen:
            title = f"{d.title} ({n})"
            n += 1
        seen.add(title)
        if title != d.title:
            ctx = ctx.note("title_dedupe", f"renamed duplicate {d.title!r} to {title!r}")
            d = d.model_copy(update={"title": title})
            changed = True
        details.append(d)
    if not changed:
        return plan, ctx
    return plan.model_copy(update={"details": details}), ctx
