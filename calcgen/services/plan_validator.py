"""
Plan Schema Validator
=====================
Boundary between the untrusted generator output and the typed Plan.

Row-level problems degrade by omission (a row, key or guard is dropped and
logged). Two things are fatal for the attempt: a custom formula that fails
the grammar (dropping it would change what the row computes) and a plan
with no surviving detail rows. A bad guard is only dropped, since losing a
guard makes a row less applicable, never wrong.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Union

from calcgen.errors import MalformedPlanError, PlanValidationError
from calcgen.models.plan import (
    MAX_BUFFS,
    MAX_DETAILS,
    Buff,
    DamageDetail,
    HealDetail,
    ParamValue,
    Plan,
    ReactionDetail,
    ShieldDetail,
)
from calcgen.models.request import CalcRequest
from calcgen.models.vocabulary import (
    ATTR_FIELDS,
    DEFAULT_MAIN_ATTR,
    GS_AMPLIFYING_REACTIONS,
    GS_LUNAR_REACTIONS,
    GS_TRANSFORMATIVE_REACTIONS,
    canonical_element,
    canonical_reaction,
    is_allowed_buff_key,
    normalize_stat,
)
from calcgen.prefabs.formula import (
    canonical_attr_names,
    referenced_tables,
    validate_custom_expression,
    validate_guard,
    validate_value_expression,
)

logger = logging.getLogger(__name__)

_KIND_ALIASES = {
    "": "dmg",
    "dmg": "dmg",
    "damage": "dmg",
    "heal": "heal",
    "healing": "heal",
    "shield": "shield",
    "shielding": "shield",
    "absorb": "shield",
    "reaction": "reaction",
    "transformative": "reaction",
}

_PARAM_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,39}$")
_ROUTING_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(,[A-Za-z][A-Za-z0-9_]*)*$")
_MAX_PARAM_STRING = 40
_INT_TEXT_RE = re.compile(r"-?[0-9]+")

_GS_BUFF_REFS = {
    r.lower(): r for r in GS_AMPLIFYING_REACTIONS + GS_TRANSFORMATIVE_REACTIONS + GS_LUNAR_REACTIONS
}


def _get(item: Dict[str, Any], *names: str) -> Any:
    """First present field among snake_case and camelCase spellings."""
    for name in names:
        if name in item:
            return item[name]
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value == int(value):
        return int(value)
    if isinstance(value, str) and _INT_TEXT_RE.fullmatch(value.strip()):
        return int(value.strip())
    return None


def _as_number(value: Any) -> Optional[float]:
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


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_expr(value: Any) -> str:
    return canonical_attr_names(_as_text(value))


def _cons(value: Any) -> Optional[int]:
    n = _as_int(value)
    return n if n is not None and 1 <= n <= 6 else None


def normalize_kind(value: Any) -> str:
    if not isinstance(value, str):
        return "dmg"
    return _KIND_ALIASES.get(value.strip().lower(), "dmg")


def normalize_params(value: Any) -> Dict[str, ParamValue]:
    """Primitive-valued flags with ASCII names; anything else is dropped."""
    if not isinstance(value, dict):
        return {}
    out: Dict[str, ParamValue] = {}
    for name, v in value.items():
        if not isinstance(name, str) or not _PARAM_NAME_RE.match(name):
            continue
        if isinstance(v, bool):
            out[name] = v
        elif isinstance(v, int):
            out[name] = v
        elif isinstance(v, float) and math.isfinite(v):
            out[name] = v
        elif isinstance(v, str) and len(v) <= _MAX_PARAM_STRING:
            out[name] = v
    return out


def normalize_main_attr(game: str, value: Any) -> str:
    text = _as_text(value)
    if not text:
        raise MalformedPlanError("main_attr is missing or empty")
    tokens = []
    for token in re.split(r"[,\s]+", text):
        token = normalize_stat(token) or token
        if token in ATTR_FIELDS and token not in tokens:
            tokens.append(token)
    if not tokens:
        logger.debug(f"main_attr '{text}' has no known attribute; using default")
        return DEFAULT_MAIN_ATTR[game]
    return ",".join(tokens)


def _guard(request: CalcRequest, value: Any, where: str, for_buff: bool = False) -> Optional[str]:
    expr = _as_expr(value)
    if not expr:
        return None
    problem = validate_guard(expr, request.registry, for_buff=for_buff)
    if problem:
        logger.debug(f"{where}: dropping invalid check '{expr}': {problem}")
        return None
    return expr


def _validate_detail(request: CalcRequest, item: Any, index: int):
    if not isinstance(item, dict):
        logger.debug(f"details[{index}] is not an object; dropped")
        return None
    title = _as_text(item.get("title"))
    if not title:
        logger.debug(f"details[{index}] has no title; dropped")
        return None

    where = f"details[{index}] ({title})"
    kind = normalize_kind(item.get("kind"))
    common = {
        "title": title,
        "params": normalize_params(item.get("params")),
        "check": _guard(request, item.get("check"), where),
        "cons": _cons(item.get("cons")),
    }
    dmg_expr = _as_expr(_get(item, "dmg_expr", "dmgExpr")) or None

    if kind == "reaction":
        reaction = canonical_reaction(request.game, item.get("reaction") or item.get("ele"))
        if reaction is None:
            logger.debug(f"{where}: unknown reaction id {item.get('reaction')!r}; dropped")
            return None
        if dmg_expr:
            problem = validate_custom_expression(dmg_expr, request.registry, needs_table=False)
            if problem:
                raise PlanValidationError(f"{where}: illegal dmg_expr: {problem}")
        return ReactionDetail(reaction=reaction, dmg_expr=dmg_expr, **common)

    registry = request.registry
    if dmg_expr:
        problem = validate_custom_expression(dmg_expr, registry)
        if problem:
            raise PlanValidationError(f"{where}: illegal dmg_expr: {problem}")

    slot = _as_text(item.get("talent"))
    table = _as_text(item.get("table"))
    if not registry.has_table(slot, table):
        refs = referenced_tables(dmg_expr) if dmg_expr else []
        if not refs:
            logger.debug(f"{where}: table talent.{slot}[{table!r}] not in registry; dropped")
            return None
        slot, table = refs[0]
    elif not dmg_expr:
        variant = registry.structured_variant(slot, table)
        if variant:
            logger.debug(f"{where}: using structured table {variant!r} instead of {table!r}")
            table = variant

    key = _as_text(item.get("key")).replace(" ", "") or None
    if key and not _ROUTING_KEY_RE.match(key):
        logger.debug(f"{where}: routing key {key!r} is not a tag list; using slot")
        key = None

    pick = _as_int(item.get("pick"))
    sample = registry.array_sample(slot, table)
    if pick is not None and (sample is None or not 0 <= pick < len(sample)):
        logger.debug(f"{where}: pick {pick} does not index talent.{slot}[{table!r}]; ignored")
        pick = None

    row = {
        "talent": slot,
        "table": table,
        "key": key,
        "stat": normalize_stat(item.get("stat")),
        "pick": pick,
        "dmg_expr": dmg_expr,
        **common,
    }
    if kind == "heal":
        return HealDetail(**row)
    if kind == "shield":
        return ShieldDetail(**row)

    raw_ele = item.get("ele")
    ele = canonical_element(request.game, raw_ele)
    if raw_ele and ele is None:
        logger.debug(f"{where}: element tag {raw_ele!r} not recognised; omitted")
    return DamageDetail(ele=ele, **row)


def _validate_buff(request: CalcRequest, item: Any, index: int) -> Optional[Union[Buff, str]]:
    if isinstance(item, str):
        ref = _GS_BUFF_REFS.get(item.strip().lower()) if request.game == "gs" else None
        if ref is None:
            logger.debug(f"buffs[{index}]: unknown buff id {item!r}; dropped")
        return ref
    if not isinstance(item, dict):
        return None
    title = _as_text(item.get("title"))
    if not title:
        logger.debug(f"buffs[{index}] has no title; dropped")
        return None

    where = f"buffs[{index}] ({title})"
    data: Dict[str, Union[float, str]] = {}
    raw_data = item.get("data")
    for key, value in (raw_data.items() if isinstance(raw_data, dict) else []):
        if not is_allowed_buff_key(request.game, key):
            logger.debug(f"{where}: key {key!r} not allowed; dropped")
            continue
        number = _as_number(value)
        if number is not None:
            data[key] = number
            continue
        expr = _as_expr(value)
        if not expr:
            continue
        problem = validate_value_expression(expr, request.registry)
        if problem:
            logger.debug(f"{where}: value of {key!r} dropped: {problem}")
            continue
        data[key] = expr

    if not data:
        logger.debug(f"{where}: no usable data; dropped")
        return None

    tree = _as_int(item.get("tree"))
    return Buff(
        title=title,
        sort=_as_int(item.get("sort")),
        cons=_cons(item.get("cons")),
        tree=tree if tree is not None and tree >= 1 else None,
        check=_guard(request, item.get("check"), where, for_buff=True),
        data=data,
    )


def validate(request: CalcRequest, raw: Any) -> Plan:
    """
    Turns a raw plan object into a Plan.

    Raises MalformedPlanError when `raw` is not a plan at all and
    PlanValidationError when no detail row survives or a custom formula is illegal.
    """
    if not isinstance(raw, dict):
        raise MalformedPlanError("plan is not a JSON object")

    main_attr = normalize_main_attr(request.game, _get(raw, "main_attr", "mainAttr"))

    details_raw = raw.get("details")
    if not isinstance(details_raw, list):
        raise MalformedPlanError("details must be a list")
    if len(details_raw) > MAX_DETAILS:
        logger.debug(f"Clamping {len(details_raw)} details to {MAX_DETAILS}")

    details = []
    for i, item in enumerate(details_raw[:MAX_DETAILS]):
        row = _validate_detail(request, item, i)
        if row is not None:
            details.append(row)
    if not details:
        raise PlanValidationError("no valid details: every row referenced an unknown table or reaction")

    buffs_raw = raw.get("buffs")
    buffs: List[Union[Buff, str]] = []
    for i, item in enumerate((buffs_raw if isinstance(buffs_raw, list) else [])[:MAX_BUFFS]):
        buff = _validate_buff(request, item, i)
        if buff is not None and buff not in buffs:
            buffs.append(buff)

    routing_keys = [d.routing_key for d in details if d.routing_key]
    def_dmg_key = _as_text(_get(raw, "def_dmg_key", "defDmgKey")) or None
    if def_dmg_key and def_dmg_key not in routing_keys:
        logger.debug(f"def_dmg_key {def_dmg_key!r} matches no surviving row; recomputed at render")
        def_dmg_key = None

    plan = Plan(
        details=details,
        buffs=buffs,
        main_attr=main_attr,
        def_dmg_key=def_dmg_key,
        def_params=normalize_params(_get(raw, "def_params", "defParams")),
    )
    logger.info(f"Validated plan for {request.name}: {len(plan.details)} details, {len(plan.buffs)} buffs")
    return plan
