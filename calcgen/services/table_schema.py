"""
Array table schema inference.

Array-valued tables come in a handful of layouts. The layout is inferred
from the display text of one level (e.g. "57.28%*2", "1.41%HP+800",
"80%ATK + 160%EM") together with the numeric sample.
"""

import re
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from calcgen.models.request import TableRegistry
from calcgen.utils.text import normalize_prompt_text

PCT_RE = re.compile(r"[%％]")
_TIMES_RE = re.compile(r"[*×xX]\s*\d+")

_STAT_PATTERNS = (
    ("mastery", re.compile(r"(元素精通|精通|elemental mastery|mastery|\bem\b)", re.IGNORECASE)),
    ("hp", re.compile(r"(生命上限|生命值上限|最大生命值|生命值|max hp|\bhp\b)", re.IGNORECASE)),
    ("defense", re.compile(r"(防御力|\bdef\b|defense)", re.IGNORECASE)),
    ("atk", re.compile(r"(攻击力|攻击|\batk\b|attack)", re.IGNORECASE)),
)


class TableSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str  # pct_list | stat_flat | stat_stat | stat_times
    stats: Tuple[str, ...]

    @property
    def stat(self) -> str:
        return self.stats[0]


def infer_stat(text: str) -> Optional[str]:
    """Scaling stat named in a text fragment, or None when no stat marker is present."""
    if not text:
        return None
    for stat, pattern in _STAT_PATTERNS:
        if pattern.search(text):
            return stat
    return None


def is_plain_percentage(text: str) -> bool:
    """'%' without any stat marker, e.g. unit '%' or text '132.5%'."""
    return bool(text) and bool(PCT_RE.search(text)) and infer_stat(text) is None


def infer_array_table_schema(registry: TableRegistry, slot: str, table: str) -> Optional[TableSchema]:
    text = normalize_prompt_text(registry.text_sample(slot, table))
    if not text:
        return None

    # "1.41%HP*5" / "80%ATK×3": [pct, hit count], multiplied rather than added
    if _TIMES_RE.search(text) and PCT_RE.search(text):
        sample = registry.array_sample(slot, table) or []
        if len(sample) >= 2:
            times = sample[1]
            if abs(times - round(times)) < 1e-9 and 1 < times <= 20:
                return TableSchema(kind="stat_times", stats=(infer_stat(text) or "atk",))

    parts = [p.strip() for p in re.split(r"[+＋]", text) if p.strip()]
    if len(parts) < 2:
        return None

    unit = registry.unit(slot, table)
    if not unit and table.endswith("2"):
        unit = registry.unit(slot, table[:-1])
    unit_stat = infer_stat(unit)

    if all(PCT_RE.search(p) for p in parts):
        stats = [s for s in (infer_stat(p) for p in parts) if s]
        stat = stats[0] if stats else "atk"
        if all(s == stat for s in stats):
            # "149.28%ATK + 186.6%" with unit "DEF": second stat lives in the unit
            if len(parts) == 2 and unit_stat:
                s0, s1 = infer_stat(parts[0]), infer_stat(parts[1])
                if s0 and not s1 and unit_stat != s0:
                    return TableSchema(kind="stat_stat", stats=(s0, unit_stat))
                if not s0 and s1 and unit_stat != s1:
                    return TableSchema(kind="stat_stat", stats=(unit_stat, s1))
            return TableSchema(kind="pct_list", stats=(stat,))

    p0, p1 = parts[0], parts[1]
    s0, s1 = infer_stat(p0), infer_stat(p1)
    pct0, pct1 = bool(PCT_RE.search(p0)), bool(PCT_RE.search(p1))
    if s0 and s1 and pct0 and pct1:
        return TableSchema(kind="stat_stat", stats=(s0, s1))
    if s0 and pct0 and not s1 and not pct1 and re.search(r"\d", p1):
        return TableSchema(kind="stat_flat", stats=(s0,))
    return None


_DESC_BASE_PATTERNS = (
    ("hp", re.compile(r"(基于|based on)[^。.]{0,12}(生命值上限|生命上限|max hp|hp)", re.IGNORECASE)),
    ("defense", re.compile(r"(基于|based on)[^。.]{0,12}(防御力|def)", re.IGNORECASE)),
    ("mastery", re.compile(r"(基于|based on)[^。.]{0,12}(元素精通|elemental mastery)", re.IGNORECASE)),
)


def infer_description_base(description: str) -> Optional[str]:
    """
    Scaling stat from a skill description. Conservative: only explicit
    "based on <stat>" phrasing counts, since multi-mechanic skills mention
    several stats.
    """
    text = normalize_prompt_text(description)
    for stat, pattern in _DESC_BASE_PATTERNS:
        if pattern.search(text):
            return stat
    return None


_ENHANCED_SLOT_RE = re.compile(r"^(a|e|q|t|z|me|mt)\d+$")
_STAT_MENTION_RE = re.compile(r"(生命|防御|精通|\bhp\b|\bdef\b|mastery|\bem\b|攻击力|攻击|\batk\b)", re.IGNORECASE)
_COMPOUND_TEXT_RE = re.compile(r"[+*/xX×]")


def _description_stat(registry: TableRegistry, slot: str) -> str:
    # gs normal attack descriptions mix mechanics (e.g. special arrows on HP)
    if registry.game == "gs" and slot == "a":
        return "atk"
    return infer_description_base(registry.description(slot)) or "atk"


def infer_scale_stat(registry: TableRegistry, slot: str, table: str) -> str:
    """
    Which stat a table's percentage applies to.

    Priority: unit hint, text sample, then atk for a plain percentage (or
    for a gs table with no per-table hint at all), then the slot
    description. Enhanced slots (`e2`, `mt1`, ...) whose description names
    no stat borrow their base slot's description.
    """
    base_table = table[:-1] if table.endswith("2") else table
    unit = registry.unit(slot, table) or registry.unit(slot, base_table)
    text = normalize_prompt_text(registry.text_sample(slot, table) or registry.text_sample(slot, base_table))
    stat = infer_stat(unit) or infer_stat(text)
    if stat:
        return stat

    unit = normalize_prompt_text(unit)
    has_table_hint = bool(unit) or bool(text)
    plain_text = is_plain_percentage(text) and not _COMPOUND_TEXT_RE.search(text)
    if (registry.game == "gs" and not has_table_hint) or is_plain_percentage(unit) or plain_text:
        return "atk"

    stat = _description_stat(registry, slot)
    description = normalize_prompt_text(registry.description(slot))
    m = _ENHANCED_SLOT_RE.match(slot)
    if stat == "atk" and m and not _STAT_MENTION_RE.search(description):
        stat = _description_stat(registry, m.group(1))
    return stat
