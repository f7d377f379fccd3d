from typing import Optional, Set, Tuple

from calcgen.models.plan import Plan
from calcgen.prefabs.formula import referenced_free_vars
from calcgen.prefabs.scanner import has_top_level_keyword, split_top_level_keyword, strip_outer_parens
from calcgen.repair.context import RepairContext, set_params


def weaken_guard(guard: str, dead: Set[str]) -> Optional[str]:
    """
    Removes the parts of `guard` that read never-set params.

    A conjunction loses only the offending clauses. A disjunction cannot be
    weakened clause by clause without changing its meaning, so the whole
    guard goes.
    """
    expr = strip_outer_parens(guard)
    if has_top_level_keyword(expr, "or"):
        return None
    clauses = split_top_level_keyword(expr, "and")
    kept = [c for c in clauses if c and not (referenced_free_vars(c) & dead)]
    if not kept:
        return None
    return " and ".join(kept)


def drop_dead_params(plan: Plan, ctx: RepairContext) -> Tuple[Plan, RepairContext]:
    assigned = set_params(plan)

    def fix(owner: str, guard: Optional[str], ctx: RepairContext):
        if not guard:
            return guard, ctx
        dead = referenced_free_vars(guard) - assigned
        if not dead:
            return guard, ctx
        new_guard = weaken_guard(guard, dead)
        ctx = ctx.note("dead_params", f"{owner}: params {sorted(dead)} never set; check {guard!r} -> {new_guard!r}")
        return new_guard, ctx

    details = []
    for d in plan.details:
        new_check, ctx = fix(d.title, d.check, ctx)
        details.append(d if new_check == d.check else d.model_copy(update={"check": new_check}))

    buffs = []
    for b in plan.buffs:
        if isinstance(b, str):
            buffs.append(b)
            continue
        new_check, ctx = fix(b.title, b.check, ctx)
        buffs.append(b if new_check == b.check else b.model_copy(update={"check": new_check}))

    if details == list(plan.details) and buffs == list(plan.buffs):
        return plan, ctx
    return plan.model_copy(update={"details": details, "buffs": buffs}), ctx
