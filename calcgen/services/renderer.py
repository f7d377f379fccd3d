"""
Code Renderer
=============
Lowers a validated, repaired Plan to the text of a Python module.

The module exposes `details`, `buffs`, `def_dmg_idx`, `def_dmg_key`,
`main_attr`, optional `def_params` and `created_by`. Row closures are
lambdas over the positional context

    talent, attr, calc, params, cons, weapon, trees

detail formulas additionally receive `dmg, heal, shield, reaction`, buff
formulas receive `current_talent`. Rendering is pure: the same plan
always yields the same bytes.
"""

import json
import re
from typing import List, Optional, Tuple

from calcgen.models.plan import (
    DamageDetail,
    HealDetail,
    Plan,
    ReactionDetail,
    ShieldDetail,
    TableDetail,
)
from calcgen.models.request import CalcRequest, TableRegistry
from calcgen.services.table_schema import infer_array_table_schema, infer_scale_stat, infer_stat
from calcgen.utils.text import normalize_prompt_text

DEFAULT_CREATED_BY = "calcgen"

CONTEXT_ARGS = "talent, attr, calc, params, cons, weapon, trees"
DETAIL_ARGS = f"{CONTEXT_ARGS}, dmg, heal, shield, reaction"
BUFF_ARGS = f"{CONTEXT_ARGS}, current_talent"

TO_RATIO = {
    "gs": "to_ratio = lambda value: value / 100",
    "sr": "to_ratio = lambda value: value",
}

# Heal/shield scalars above this are flat amounts rather than percentages
FLAT_THRESHOLD = {"gs": 200.0, "sr": 5.0}

_TOTAL_TITLE_RE = re.compile(r"(总|合计|\btotal\b|all hits)", re.IGNORECASE)
_PCT_FLAT_PAIRS = (("百分比", "固定值"), ("Percentage", "Flat"), ("Percent", "Flat"), ("%", "Flat"))


def literal(value) -> str:
    """Python literal text for a plan value."""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() and abs(value) < 1e15 else repr(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, dict):
        return "{" + ", ".join(f"{literal(k)}: {literal(v)}" for k, v in value.items()) + "}"
    raise TypeError(f"cannot render {type(value).__name__} as a literal")


def table_ref(slot: str, table: str, index: Optional[int] = None) -> str:
    ref = f"talent.{slot}[{literal(table)}]"
    return ref if index is None else f"{ref}[{index}]"


def _call(fn: str, amount: str, key: str, ele: Optional[str]) -> str:
    ele_arg = f", {literal(ele)}" if ele else ""
    return f"{fn}({amount}, {literal(key)}{ele_arg})"


def _scaled(stat: str, ref: str) -> str:
    return f"calc(attr.{stat}) * to_ratio({ref})"


def _damage_expression(registry: TableRegistry, d: DamageDetail) -> str:
    slot, table, key, ele = d.talent, d.table, d.routing_key, d.ele
    stat = d.stat if (registry.game == "sr" and d.stat) else infer_scale_stat(registry, slot, table)
    sample = registry.array_sample(slot, table)

    def percent_of_stat(amount_ref: str) -> str:
        if stat == "atk":
            return _call("dmg", amount_ref, key, ele)
        return _call("dmg.basic", _scaled(stat, amount_ref), key, ele)

    if sample is None:
        return percent_of_stat(table_ref(slot, table))
    if d.pick is not None:
        return percent_of_stat(table_ref(slot, table, d.pick))

    t0, t1 = table_ref(slot, table, 0), table_ref(slot, table, 1)
    schema = infer_array_table_schema(registry, slot, table)
    if schema is None:
        return _call("dmg.basic", f"{_scaled(stat, t0)} + {t1}", key, ele)

    if schema.kind == "pct_list":
        hits = " + ".join(table_ref(slot, table, i) for i in range(len(sample)))
        stat = schema.stat
        return percent_of_stat(f"({hits})")
    if schema.kind == "stat_flat":
        return _call("dmg.basic", f"{_scaled(schema.stat, t0)} + {t1}", key, ele)
    if schema.kind == "stat_stat":
        s0, s1 = schema.stats
        return _call("dmg.basic", f"{_scaled(s0, t0)} + {_scaled(s1, t1)}", key, ele)
    # stat_times: one hit unless the row is explicitly the total
    stat = schema.stat
    if _TOTAL_TITLE_RE.search(normalize_prompt_text(d.title)):
        return _call("dmg.basic", f"{_scaled(stat, t0)} * {t1}", key, ele)
    return percent_of_stat(t0)


def _flat_sibling(registry: TableRegistry, slot: str, table: str) -> Optional[str]:
    for pct_marker, flat_marker in _PCT_FLAT_PAIRS:
        if pct_marker in table:
            sibling = table.replace(pct_marker, flat_marker)
            if sibling != table and registry.has_table(slot, sibling) and not registry.is_array(slot, sibling):
                return sibling
    return None


def _support_expression(registry: TableRegistry, d: TableDetail, fn: str) -> str:
    slot, table = d.talent, d.table
    default_stat = "defense" if (fn == "shield" and registry.game == "sr") else "hp"
    stat = (
        d.stat
        or infer_stat(registry.unit(slot, table))
        or infer_stat(normalize_prompt_text(registry.text_sample(slot, table)))
        or infer_stat(table)
        or default_stat
    )
    sample = registry.sample(slot, table)

    if isinstance(sample, list):
        if d.pick is not None:
            return f"{fn}({_scaled(stat, table_ref(slot, table, d.pick))})"
        t0, t1 = table_ref(slot, table, 0), table_ref(slot, table, 1)
        schema = infer_array_table_schema(registry, slot, table)
        if schema is not None and schema.kind == "stat_stat":
            s0, s1 = schema.stats
            return f"{fn}({_scaled(s0, t0)} + {_scaled(s1, t1)})"
        if schema is not None and schema.kind in ("stat_flat", "stat_times", "pct_list"):
            stat = schema.stat
        return f"{fn}({_scaled(stat, t0)} + {t1})"

    sibling = _flat_sibling(registry, slot, table)
    if sibling:
        return f"{fn}({_scaled(stat, table_ref(slot, table))} + {table_ref(slot, sibling)})"
    if sample is not None and abs(sample) > FLAT_THRESHOLD[registry.game]:
        return f"{fn}({table_ref(slot, table)})"
    return f"{fn}({_scaled(stat, table_ref(slot, table))})"


def detail_expression(request: CalcRequest, d) -> str:
    if d.dmg_expr:
        return d.dmg_expr
    if isinstance(d, ReactionDetail):
        return f"reaction({literal(d.reaction)})"
    if isinstance(d, HealDetail):
        return _support_expression(request.registry, d, "heal")
    if isinstance(d, ShieldDetail):
        return _support_expression(request.registry, d, "shield")
    return _damage_expression(request.registry, d)


def default_routing(plan: Plan) -> Tuple[str, int]:
    keys = plan.routing_keys()
    if plan.def_dmg_key and plan.def_dmg_key in keys:
        key = plan.def_dmg_key
    elif keys:
        key = next((k for k in keys if k.split(",")[0] == "e"), None)
        key = key or next((k for k in keys if k.split(",")[0] == "q"), None) or keys[0]
    else:
        return "e", 0
    for i, d in enumerate(plan.details):
        if d.routing_key == key:
            return key, i
    return key, 0


def _render_detail(request: CalcRequest, d) -> List[str]:
    lines = ["    {", f"        \"title\": {literal(d.title)},"]
    if isinstance(d, TableDetail):
        lines.append(f"        \"talent\": {literal(d.talent)},")
        lines.append(f"        \"dmg_key\": {literal(d.routing_key)},")
    if d.params:
        lines.append(f"        \"params\": {literal(d.params)},")
    if d.cons is not None:
        lines.append(f"        \"cons\": {d.cons},")
    if d.check:
        lines.append(f"        \"check\": lambda {CONTEXT_ARGS}: {d.check},")
    lines.append(f"        \"dmg\": lambda {DETAIL_ARGS}: {detail_expression(request, d)},")
    lines.append("    },")
    return lines


def _render_buff(b) -> List[str]:
    if isinstance(b, str):
        return [f"    {literal(b)},"]
    lines = ["    {", f"        \"title\": {literal(b.title)},"]
    if b.sort is not None:
        lines.append(f"        \"sort\": {b.sort},")
    if b.cons is not None:
        lines.append(f"        \"cons\": {b.cons},")
    if b.tree is not None:
        lines.append(f"        \"tree\": {b.tree},")
    if b.check:
        lines.append(f"        \"check\": lambda {BUFF_ARGS}: {b.check},")
    lines.append("        \"data\": {")
    for key, value in b.data.items():
        if isinstance(value, str):
            lines.append(f"            {literal(key)}: lambda {BUFF_ARGS}: {value},")
        else:
            lines.append(f"            {literal(key)}: {literal(value)},")
    lines.append("        },")
    lines.append("    },")
    return lines


def render(request: CalcRequest, plan: Plan, created_by: str = DEFAULT_CREATED_BY) -> str:
    """Source text of the calculation module for `plan`. Pure and deterministic."""
    name = re.sub(r"\s+", " ", request.name).strip()
    def_dmg_key, def_dmg_idx = default_routing(plan)

    lines = [
        f"# Calculation rules for {name} ({request.game}). Auto-generated by {created_by}.",
        "",
        TO_RATIO[request.game],
        "",
        "details = [",
    ]
    for d in plan.details:
        lines.extend(_render_detail(request, d))
    lines.append("]")
    lines.append("")
    lines.append(f"def_dmg_idx = {def_dmg_idx}")
    lines.append(f"def_dmg_key = {literal(def_dmg_key)}")
    lines.append(f"main_attr = {literal(plan.main_attr)}")
    lines.append("")
    if plan.buffs:
        lines.append("buffs = [")
        for b in plan.buffs:
            lines.extend(_render_buff(b))
        lines.append("]")
    else:
        lines.append("buffs = []")
    if plan.def_params:
        lines.append("")
        lines.append(f"def_params = {literal(plan.def_params)}")
    lines.append("")
    lines.append(f"created_by = {literal(created_by)}")
    lines.append("")
    return "\n".join(lines)
