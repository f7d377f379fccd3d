import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Set, Tuple

from calcgen.models.plan import Plan, TableDetail
from calcgen.models.request import CalcRequest, TableRegistry
from calcgen.prefabs.formula import referenced_tables

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepairContext:
    """
    State threaded through the repair passes.

    Passes never mutate it; they return an updated copy together with the
    updated plan. `required_flags` carries (flag, target key) pairs a pass
    wants some detail row to set, for a later pass to satisfy.
    """

    request: CalcRequest
    required_flags: Tuple[Tuple[str, str], ...] = ()
    notes: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def registry(self) -> TableRegistry:
        return self.request.registry

    @property
    def game(self) -> str:
        return self.request.game

    def note(self, pass_name: str, message: str) -> "RepairContext":
        logger.debug(f"[{pass_name}] {message}")
        return replace(self, notes=self.notes + (f"{pass_name}: {message}",))

    def require_flag(self, flag: str, target: str) -> "RepairContext":
        if (flag, target) in self.required_flags:
            return self
        return replace(self, required_flags=self.required_flags + ((flag, target),))


RepairPass = Callable[[Plan, RepairContext], Tuple[Plan, RepairContext]]


def consumed_tables(plan: Plan) -> Set[Tuple[str, str]]:
    """(slot, table) pairs read by detail rows, directly or from custom expressions."""
    used = set()
    for d in plan.details:
        if isinstance(d, TableDetail):
            used.add((d.talent, d.table))
        if d.dmg_expr:
            used.update(referenced_tables(d.dmg_expr))
    return used


def set_params(plan: Plan) -> Set[str]:
    """Free-variable names some row (or the plan defaults) assigns."""
    names = set(plan.def_params)
    for d in plan.details:
        names.update(d.params)
    return names
