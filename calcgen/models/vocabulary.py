"""
Calculation Vocabulary
======================
Closed vocabularies shared by the validator, repair engine, renderer and
runtime checker, per output mode ("gs" / "sr").

Key Concepts:
- Slot: skill category that groups tables (a, e, q, t, ...)
- Reaction id: canonical name of an elemental reaction / break effect
- Element tag: third argument of the apply-damage call
- Buff key: name of a modifier consumed by the calculation engine
"""

import re
from typing import Dict, FrozenSet, Optional, Tuple

BASE_SLOTS: Dict[str, Tuple[str, ...]] = {
    "gs": ("a", "e", "q"),
    "sr": ("a", "e", "q", "t"),
}

# Memosprite slots only exist for some sr characters
SR_EXTRA_SLOTS: Tuple[str, ...] = ("me", "mt", "me2", "mt1", "mt2")

DEFAULT_MAIN_ATTR = {
    "gs": "atk,cpct,cdmg",
    "sr": "atk,cpct,cdmg,speed",
}

# =============================================================================
# REACTIONS
# =============================================================================

GS_AMPLIFYING_REACTIONS = ("vaporize", "melt", "aggravate", "spread")
GS_LUNAR_REACTIONS = ("lunarCharged", "lunarBloom", "lunarCrystallize")
GS_TRANSFORMATIVE_REACTIONS = (
    "swirl",
    "crystallize",
    "bloom",
    "hyperBloom",
    "burgeon",
    "burning",
    "overloaded",
    "electroCharged",
    "superConduct",
    "shatter",
)
SR_BREAK_REACTIONS = (
    "physicalBreak",
    "fireBreak",
    "iceBreak",
    "lightningBreak",
    "windBreak",
    "quantumBreak",
    "imaginaryBreak",
    "superBreak",
)
SR_DOT_ELEMENTS = ("shock", "burn", "windShear", "bleed", "entanglement", "skillDot")

_REACTION_ALIASES_GS = {
    "蒸发": "vaporize",
    "融化": "melt",
    "超激化": "aggravate",
    "蔓激化": "spread",
    "结晶": "crystallize",
    "燃烧": "burning",
    "超导": "superConduct",
    "superconduct": "superConduct",
    "扩散": "swirl",
    "感电": "electroCharged",
    "electro-charged": "electroCharged",
    "碎冰": "shatter",
    "超载": "overloaded",
    "overload": "overloaded",
    "绽放": "bloom",
    "烈绽放": "burgeon",
    "超绽放": "hyperBloom",
    "hyper bloom": "hyperBloom",
    "月感电": "lunarCharged",
    "月绽放": "lunarBloom",
    "月结晶": "lunarCrystallize",
}

_REACTION_ALIASES_SR = {
    "物理击破": "physicalBreak",
    "火击破": "fireBreak",
    "冰击破": "iceBreak",
    "雷击破": "lightningBreak",
    "风击破": "windBreak",
    "量子击破": "quantumBreak",
    "虚数击破": "imaginaryBreak",
    "超击破": "superBreak",
    "physical break": "physicalBreak",
    "fire break": "fireBreak",
    "ice break": "iceBreak",
    "lightning break": "lightningBreak",
    "wind break": "windBreak",
    "quantum break": "quantumBreak",
    "imaginary break": "imaginaryBreak",
    "super break": "superBreak",
}


def _canonical_map(ids, aliases) -> Dict[str, str]:
    out = {i.lower(): i for i in ids}
    out.update({k.lower(): v for k, v in aliases.items()})
    return out


# Ids usable as reaction rows (no table involved)
_REACTION_ROW_IDS = {
    "gs": _canonical_map(GS_TRANSFORMATIVE_REACTIONS, _REACTION_ALIASES_GS),
    "sr": _canonical_map(SR_BREAK_REACTIONS, _REACTION_ALIASES_SR),
}


def canonical_reaction(game: str, raw: object) -> Optional[str]:
    """Case-insensitive reaction id lookup; None when not a reaction-row id."""
    if not isinstance(raw, str):
        return None
    canonical = _REACTION_ROW_IDS[game].get(raw.strip().lower())
    if canonical is None:
        return None
    # Amplifying aliases live in the same alias table but are not reaction rows
    if canonical in GS_AMPLIFYING_REACTIONS or canonical in GS_LUNAR_REACTIONS:
        return None
    return canonical


# =============================================================================
# ELEMENT TAGS (third argument of dmg)
# =============================================================================

ELEMENT_TAGS: Dict[str, FrozenSet[str]] = {
    "gs": frozenset(
        ("phy", "scene")
        + GS_AMPLIFYING_REACTIONS
        + GS_LUNAR_REACTIONS
        + GS_TRANSFORMATIVE_REACTIONS
    ),
    "sr": frozenset(SR_DOT_ELEMENTS + SR_BREAK_REACTIONS + ("elation", "scene")),
}

_ELEMENT_TAG_LOOKUP = {
    game: _canonical_map(
        tags,
        {k: v for k, v in (_REACTION_ALIASES_GS if game == "gs" else _REACTION_ALIASES_SR).items() if v in tags},
    )
    for game, tags in ELEMENT_TAGS.items()
}


def canonical_element(game: str, raw: object) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    return _ELEMENT_TAG_LOOKUP[game].get(raw.strip().lower())


# =============================================================================
# ATTRIBUTES AND STATS
# =============================================================================

ATTR_FIELDS: FrozenSet[str] = frozenset(
    (
        "atk", "hp", "defense", "mastery", "recharge", "cpct", "cdmg", "heal",
        "dmg", "phy", "shield", "speed", "effPct", "effDef", "stance",
    )
)

_STAT_ALIASES = {
    "atk": "atk",
    "attack": "atk",
    "hp": "hp",
    "life": "hp",
    "def": "defense",
    "defense": "defense",
    "defence": "defense",
    "mastery": "mastery",
    "em": "mastery",
    "elementalmastery": "mastery",
    "elemental_mastery": "mastery",
}


def normalize_stat(raw: object) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    return _STAT_ALIASES.get(raw.strip().lower().replace(" ", ""))


# =============================================================================
# BUFF KEYS
# =============================================================================

_REACTION_KEY_RE = "|".join(GS_TRANSFORMATIVE_REACTIONS + GS_AMPLIFYING_REACTIONS + GS_LUNAR_REACTIONS)

_BUFF_KEY_PATTERNS = {
    "gs": [
        re.compile(r"^(hp|atk|def)(Base|Plus|Pct|Inc)?$"),
        re.compile(r"^(mastery|cpct|cdmg|heal|recharge|dmg|phy|shield)(Plus|Pct|Inc)?$"),
        re.compile(r"^(enemyDef|enemyIgnore|ignore)$"),
        re.compile(r"^(kx|fykx|multi|fyplus|fypct|fybase|fyinc|fycdmg|elevated)$"),
        re.compile(rf"^({_REACTION_KEY_RE})$"),
        re.compile(r"^(a|a2|a3|e|q|nightsoul)(Def|Ignore|Dmg|Enemydmg|Plus|Pct|Cpct|Cdmg|Multi|Elevated)$"),
    ],
    "sr": [
        re.compile(r"^(hp|atk|def|speed)(Base|Plus|Pct|Inc)?$"),
        re.compile(r"^(speed|recharge|cpct|cdmg|heal|dmg|enemydmg|effPct|effDef|shield|stance)(Plus|Pct|Inc)?$"),
        re.compile(r"^(enemyDef|enemyIgnore|ignore)$"),
        re.compile(r"^(kx|multi)$"),
        re.compile(r"^(a|a2|a3|e|q|t|me|mt|dot|break)(Def|Ignore|Dmg|Enemydmg|Plus|Pct|Cpct|Cdmg|Multi|Elevated)$"),
        re.compile(r"^elation(Pct|Enemydmg|Merrymake|Def|Ignore)?$"),
    ],
}

_PLACEHOLDER_KEY_RE = re.compile(r"^_[A-Za-z][A-Za-z0-9_]{0,31}$")


def is_allowed_buff_key(game: str, key: object) -> bool:
    """Keys starting with "_" are title placeholders and always allowed."""
    if not isinstance(key, str) or not key:
        return False
    if _PLACEHOLDER_KEY_RE.match(key):
        return True
    return any(p.match(key) for p in _BUFF_KEY_PATTERNS[game])


_PERCENT_SUFFIXES = ("Inc", "Multi", "Pct", "Dmg", "Cdmg", "Cpct", "Enemydmg")
_PERCENT_KEYS = frozenset(
    ("cpct", "cdmg", "dmg", "phy", "heal", "shield", "recharge", "kx", "enemyDef", "enemydmg", "fypct", "fyinc")
)


def is_percent_like_key(key: str) -> bool:
    if key.startswith("_") or key.endswith("Plus") or key in ("fyplus", "fybase"):
        return False
    return key in _PERCENT_KEYS or key.endswith(_PERCENT_SUFFIXES)


def is_crit_rate_key(key: str) -> bool:
    return key == "cpct" or key.endswith("Cpct")


# =============================================================================
# PLAUSIBILITY BOUNDS
# =============================================================================

DETAIL_ABS_BOUND = {"gs": 20_000_000, "sr": 60_000_000}
PERCENT_UPPER = 500.0
SR_DMG_KEY_UPPER = 5000.0
PERCENT_LOWER = -80.0
CRIT_RATE_UPPER = 100.0
SR_KEY_UPPER = {"kx": 100.0, "enemyDef": 120.0, "enemyIgnore": 120.0, "ignore": 120.0, "enemydmg": 250.0}
