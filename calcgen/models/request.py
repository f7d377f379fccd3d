import logging
import math
from functools import cached_property
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from calcgen.models.vocabulary import BASE_SLOTS, SR_EXTRA_SLOTS

logger = logging.getLogger(__name__)

SampleValue = Union[float, List[float]]

MAX_ARRAY_SAMPLE = 10


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


class CalcRequest(BaseModel):
    """One character's worth of input: which tables exist, sample values and hints."""

    game: Literal["gs", "sr"] = Field(..., description="Output mode.")
    id: Optional[int] = Field(None, description="Upstream character id.")
    name: str = Field(..., description="Display name of the character.")
    elem: str = Field("", description="Element of the character, as reported upstream.")
    weapon: Optional[str] = Field(None, description="Weapon type (gs) or path (sr).")
    star: Optional[int] = Field(None, description="Rarity.")
    tables: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Slot -> table names available at runtime.",
        examples=[{"e": ["Skill DMG", "CD"], "q": ["Burst DMG"]}],
    )
    table_units: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="Slot -> table -> unit hint text (e.g. '% Normal Attack DMG').",
    )
    table_samples: Dict[str, Dict[str, SampleValue]] = Field(
        default_factory=dict,
        description="Slot -> table -> sample value; arrays mark multi-component tables.",
    )
    table_text_samples: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="Slot -> table -> display text of one level, e.g. '57.28%*2'.",
    )
    talent_desc: Dict[str, str] = Field(
        default_factory=dict, description="Slot -> skill description text."
    )
    buff_hints: List[str] = Field(
        default_factory=list, description="Passive/constellation/trace texts."
    )

    @field_validator("table_samples", mode="before")
    @classmethod
    def _clean_samples(cls, value: Any) -> Dict[str, Dict[str, SampleValue]]:
        if not isinstance(value, dict):
            return {}
        cleaned: Dict[str, Dict[str, SampleValue]] = {}
        for slot, per_table in value.items():
            if not isinstance(per_table, dict):
                continue
            out: Dict[str, SampleValue] = {}
            for table, raw in per_table.items():
                if isinstance(raw, (list, tuple)):
                    nums = [_coerce_number(v) for v in raw[:MAX_ARRAY_SAMPLE]]
                    if nums and all(n is not None for n in nums):
                        out[str(table)] = nums
                    continue
                num = _coerce_number(raw)
                if num is not None:
                    out[str(table)] = num
            cleaned[str(slot)] = out
        return cleaned

    @cached_property
    def registry(self) -> "TableRegistry":
        return TableRegistry(self)


class TableRegistry:
    """
    Which `talent.<slot>["<table>"]` references are legal for a request,
    and what shape each table has at runtime.
    """

    def __init__(self, request: CalcRequest):
        self.game = request.game
        allowed = list(BASE_SLOTS[request.game])
        if request.game == "sr":
            allowed += [s for s in SR_EXTRA_SLOTS if request.tables.get(s)]

        self._tables: Dict[str, List[str]] = {}
        for slot in allowed:
            seen = []
            for name in request.tables.get(slot) or []:
                name = str(name).strip()
                if name and name not in seen:
                    seen.append(name)
            self._tables[slot] = seen

        dropped = sorted(set(request.tables) - set(allowed))
        if dropped:
            logger.debug(f"Ignoring tables for unsupported slots: {dropped}")

        self._samples = request.table_samples
        self._texts = request.table_text_samples
        self._units = request.table_units
        self._desc = request.talent_desc

    @property
    def slots(self) -> List[str]:
        return list(self._tables)

    def has_slot(self, slot: Any) -> bool:
        return isinstance(slot, str) and slot in self._tables

    def tables(self, slot: str) -> List[str]:
        return list(self._tables.get(slot, []))

    def has_table(self, slot: Any, table: Any) -> bool:
        return self.has_slot(slot) and isinstance(table, str) and table in self._tables[slot]

    def iter_tables(self) -> Iterator[Tuple[str, str]]:
        for slot, names in self._tables.items():
            for name in names:
                yield slot, name

    def sample(self, slot: str, table: str) -> Optional[SampleValue]:
        return (self._samples.get(slot) or {}).get(table)

    def array_sample(self, slot: str, table: str) -> Optional[List[float]]:
        value = self.sample(slot, table)
        return value if isinstance(value, list) else None

    def scalar_sample(self, slot: str, table: str) -> Optional[float]:
        value = self.sample(slot, table)
        return value if isinstance(value, float) else None

    def is_array(self, slot: str, table: str) -> bool:
        return self.array_sample(slot, table) is not None

    def text_sample(self, slot: str, table: str) -> str:
        return str((self._texts.get(slot) or {}).get(table) or "")

    def unit(self, slot: str, table: str) -> str:
        return str((self._units.get(slot) or {}).get(table) or "")

    def description(self, slot: str) -> str:
        return str(self._desc.get(slot) or "")

    def structured_variant(self, slot: str, table: str) -> Optional[str]:
        """`X2` is the structured ([pct, flat] / [pct, hits]) twin of `X` when its sample is an array."""
        if table.endswith("2"):
            return None
        candidate = f"{table}2"
        if self.has_table(slot, candidate) and self.is_array(slot, candidate):
            return candidate
        return None
