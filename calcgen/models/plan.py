"""
Plan Models
===========
The validated, trusted form of a formula plan.

Detail rows are tagged variants discriminated on `kind`; every variant
carries exactly the fields it needs, so the renderer and repair passes can
dispatch on type instead of probing for optional fields. Models are frozen:
repair passes build new rows with `model_copy(update=...)`.
"""

from typing import Annotated, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calcgen.models.vocabulary import normalize_stat

MAX_DETAILS = 20
MAX_BUFFS = 30

ParamValue = Union[bool, int, float, str]
BuffValue = Union[float, str]


class DetailBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1, description="Showcase title of the row.")
    params: Dict[str, ParamValue] = Field(
        default_factory=dict,
        description="Default state flags/counters applied while computing this row.",
    )
    check: Optional[str] = Field(None, description="Guard expression; the row is hidden when falsy.")
    cons: Optional[int] = Field(None, ge=1, le=6, description="Minimum tier required.")

    @property
    def routing_key(self) -> Optional[str]:
        return None


class TableDetail(DetailBase):
    talent: str = Field(..., description="Slot the table belongs to.")
    table: str = Field(..., description="Table name inside the slot.")
    key: Optional[str] = Field(
        None,
        description="Routing key, optionally with comma tags ('e,nightsoul'). Defaults to the slot.",
    )
    stat: Optional[Literal["atk", "hp", "defense", "mastery"]] = Field(
        None, description="Scaling stat override: atk, hp, defense or mastery."
    )
    pick: Optional[int] = Field(None, ge=0, description="Index into an array-valued table.")
    dmg_expr: Optional[str] = Field(None, description="Custom expression replacing the template.")

    @field_validator("stat", mode="before")
    @classmethod
    def _canonical_stat(cls, value):
        return normalize_stat(value) or value

    @property
    def routing_key(self) -> str:
        return self.key or self.talent


class DamageDetail(TableDetail):
    kind: Literal["dmg"] = "dmg"
    ele: Optional[str] = Field(None, description="Element/reaction tag passed as third dmg() argument.")


class HealDetail(TableDetail):
    kind: Literal["heal"] = "heal"


class ShieldDetail(TableDetail):
    kind: Literal["shield"] = "shield"


class ReactionDetail(DetailBase):
    kind: Literal["reaction"] = "reaction"
    reaction: str = Field(..., description="Canonical reaction id.")
    dmg_expr: Optional[str] = Field(None, description="Optional scaling of the reaction result.")


Detail = Annotated[
    Union[DamageDetail, HealDetail, ShieldDetail, ReactionDetail],
    Field(discriminator="kind"),
]


class Buff(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    sort: Optional[int] = Field(None, description="Ordering weight.")
    cons: Optional[int] = Field(None, ge=1, le=6)
    tree: Optional[int] = Field(None, ge=1, description="Trace/branch unlock requirement.")
    check: Optional[str] = None
    data: Dict[str, BuffValue] = Field(
        default_factory=dict,
        description="Modifier key -> constant number or expression string.",
    )
    rebased_keys: List[str] = Field(
        default_factory=list,
        description="Multiplier keys already converted to the delta convention.",
        exclude=True,
    )


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    details: List[Detail] = Field(..., max_length=MAX_DETAILS)
    buffs: List[Union[Buff, str]] = Field(default_factory=list, max_length=MAX_BUFFS)
    main_attr: str = Field(..., min_length=1, examples=["atk,cpct,cdmg"])
    def_dmg_key: Optional[str] = None
    def_params: Dict[str, ParamValue] = Field(default_factory=dict)

    def table_rows(self) -> Iterator[TableDetail]:
        for d in self.details:
            if isinstance(d, TableDetail):
                yield d

    def buff_rows(self) -> Iterator[Tuple[int, Buff]]:
        for i, b in enumerate(self.buffs):
            if isinstance(b, Buff):
                yield i, b

    def routing_keys(self) -> List[str]:
        return [d.routing_key for d in self.table_rows()]
