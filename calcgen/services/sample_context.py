"""
Synthetic evaluation context for rendered calculation modules.

Every name a row closure can read gets a plain stand-in here: attribute
items, talent slots mirroring the registry, a params bag with
representative defaults and the result helpers. Nothing touches real game
data; the goal is to catch formulas that crash or produce absurd numbers.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from calcgen.models.request import TableRegistry
from calcgen.models.vocabulary import (
    ELEMENT_TAGS,
    GS_LUNAR_REACTIONS,
    GS_TRANSFORMATIVE_REACTIONS,
    SR_BREAK_REACTIONS,
)


class SampleEvalError(ValueError):
    """A helper stand-in was called with arguments the real engine would reject."""


@dataclass(frozen=True)
class Magnitude:
    name: str
    attr_scale: float
    detail_scalar: float  # what every table entry reads as in detail rows
    buff_scalar: float  # ... and in modifier rows


MAGNITUDES: Dict[str, List[Magnitude]] = {
    "gs": [Magnitude("large", 1.0, 100.0, 20.0), Magnitude("small", 0.05, 1.0, 1.0)],
    "sr": [Magnitude("large", 1.0, 10.0, 0.2), Magnitude("small", 0.05, 0.1, 0.01)],
}

ATTR_SAMPLES = {
    "atk": 2000.0,
    "hp": 40000.0,
    "defense": 1000.0,
    "mastery": 800.0,
    "recharge": 120.0,
    "heal": 0.0,
    "shield": 100.0,
    "cpct": 50.0,
    "cdmg": 100.0,
    "dmg": 0.0,
    "phy": 0.0,
    "speed": 100.0,
    "effPct": 0.0,
    "effDef": 0.0,
    "stance": 0.0,
}

PARAM_DEFAULTS: Dict[str, Any] = {
    "q": True,
    "e": True,
    "half": True,
    "halfHp": True,
    "lowHp": True,
    "weak": True,
    "shield": True,
    "triggered": False,
    "tBuff": True,
    "stacks": 60,
    "stack": 4,
    "wish": 60,
    "debuffCount": 3,
    "tArtisBuffCount": 8,
    "Memosprite": True,
}

REACTION_RESULT = 1000.0

_REACTION_IDS = {
    "gs": frozenset(GS_TRANSFORMATIVE_REACTIONS + GS_LUNAR_REACTIONS),
    "sr": frozenset(SR_BREAK_REACTIONS),
}


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# =============================================================================
# CONTEXT STAND-INS
# =============================================================================

class AttrItem:
    def __init__(self, base: float, plus: float = 0.0, pct: float = 0.0):
        self.base = base
        self.plus = plus
        self.pct = pct

    def __repr__(self):
        return f"AttrItem({self.base}, {self.plus}, {self.pct})"


class AttrBag:
    """`attr.<field>`; unknown fields read as zero items."""

    def __init__(self, scale: float):
        self._scale = scale

    def __getattr__(self, name: str) -> AttrItem:
        if name.startswith("_"):
            raise AttributeError(name)
        return AttrItem(ATTR_SAMPLES.get(name, 0.0) * self._scale)


def calc(item: Any) -> float:
    if not isinstance(item, AttrItem):
        raise SampleEvalError(f"calc() expects attr.<field>, got {type(item).__name__}")
    return item.base + item.plus + item.base * item.pct / 100


class ParamsBag:
    """`params.<name>`; names nobody sets read as 0."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._values = dict(PARAM_DEFAULTS)
        self._values.update(overrides or {})

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._values.get(name, 0)


class TalentSlot:
    def __init__(self, slot: str, registry: TableRegistry, scalar: float):
        self._slot = slot
        self._registry = registry
        self._scalar = scalar

    def __getitem__(self, table: str):
        if not self._registry.has_table(self._slot, table):
            raise KeyError(f'talent.{self._slot}["{table}"]')
        # Real values would hide unit mistakes; only the shape is kept
        sample = self._registry.sample(self._slot, table)
        if isinstance(sample, list):
            return [self._scalar] * len(sample)
        return self._scalar


class TalentBag:
    def __init__(self, registry: TableRegistry, scalar: float):
        self._registry = registry
        self._scalar = scalar

    def __getattr__(self, slot: str) -> TalentSlot:
        if slot.startswith("_") or not self._registry.has_slot(slot):
            raise AttributeError(f"unknown slot talent.{slot}")
        return TalentSlot(slot, self._registry, self._scalar)


class OpaqueBag:
    """weapon / trees: any field reads as the default."""

    def __init__(self, default: Any = 0, **values):
        self._default = default
        self._values = values

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._values.get(name, self._default)


# =============================================================================
# RESULT HELPERS
# =============================================================================

class DamageResult:
    def __init__(self, value: float):
        self.dmg = value
        self.avg = value

    def __repr__(self):
        return f"DamageResult({self.avg})"


class DamageHelper:
    """`dmg(pct, key[, ele])` scales the attack stat; `dmg.basic(amount, key[, ele])` takes the amount as-is."""

    def __init__(self, game: str, attack: float):
        self._game = game
        self._attack = attack

    def _check_tags(self, key: Any, ele: Any) -> None:
        if not isinstance(key, str) or not key:
            raise SampleEvalError(f"damage key must be a non-empty string, got {key!r}")
        if ele is None:
            return
        if not isinstance(ele, str) or not ele:
            raise SampleEvalError(f"element tag must be a non-empty string, got {ele!r}")
        if ele not in ELEMENT_TAGS[self._game]:
            raise SampleEvalError(f"unknown element tag {ele!r}")

    def __call__(self, pct: Any, key: Any = None, ele: Any = None) -> DamageResult:
        if not is_number(pct):
            raise SampleEvalError(f"dmg() multiplier must be a number, got {type(pct).__name__}")
        self._check_tags(key, ele)
        ratio = pct / 100 if self._game == "gs" else pct
        return DamageResult(self._attack * ratio)

    def basic(self, amount: Any, key: Any = None, ele: Any = None) -> DamageResult:
        if not is_number(amount):
            raise SampleEvalError(f"dmg.basic() amount must be a number, got {type(amount).__name__}")
        self._check_tags(key, ele)
        return DamageResult(float(amount))


def _amount_result(name: str):
    def helper(amount: Any) -> Dict[str, float]:
        if not is_number(amount):
            raise SampleEvalError(f"{name}() amount must be a number, got {type(amount).__name__}")
        return {"avg": float(amount)}

    helper.__name__ = name
    return helper


def make_reaction(game: str):
    def reaction(reaction_id: Any) -> DamageResult:
        if reaction_id not in _REACTION_IDS[game]:
            raise SampleEvalError(f"unknown reaction id {reaction_id!r}")
        return DamageResult(REACTION_RESULT)

    return reaction


# =============================================================================
# CONTEXT ASSEMBLY
# =============================================================================

SAFE_FUNCTIONS = {
    "max": max,
    "min": min,
    "abs": abs,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
}


def context_values(
    registry: TableRegistry,
    magnitude: Magnitude,
    params: Optional[Dict[str, Any]] = None,
    for_buff: bool = False,
) -> Dict[str, Any]:
    """Positional context shared by all row closures, keyed by argument name."""
    scalar = magnitude.buff_scalar if for_buff else magnitude.detail_scalar
    return {
        "talent": TalentBag(registry, scalar),
        "attr": AttrBag(magnitude.attr_scale),
        "calc": calc,
        "params": ParamsBag(params),
        "cons": 6,
        "weapon": OpaqueBag(0, name="", star=5, affix=1, type=""),
        "trees": OpaqueBag(True),
    }


def result_helpers(registry: TableRegistry, magnitude: Magnitude) -> Dict[str, Any]:
    attack = calc(AttrBag(magnitude.attr_scale).atk)
    return {
        "dmg": DamageHelper(registry.game, attack),
        "heal": _amount_result("heal"),
        "shield": _amount_result("shield"),
        "reaction": make_reaction(registry.game),
    }
