"""
Sandboxed Runtime Checker
=========================
Last gate before a rendered module is accepted.

Syntax phase: the source is parsed with `ast` and walked against a node
whitelist: module-level assignments of literals and lambdas only, calls
to the permitted helpers only, no underscore attributes. The module is
never executed.

Semantic phase: every lambda body is evaluated with simpleeval against the
stand-ins from `sample_context`, once per magnitude, and the results are
held to plausibility bounds.

Both phases collect every issue they find and raise a single
RuntimeCheckError, so the message can be fed back to the generator.
"""

import ast
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field
from simpleeval import EvalWithCompoundTypes, InvalidExpression

from calcgen.errors import RuntimeCheckError
from calcgen.models.request import CalcRequest, TableRegistry
from calcgen.models.vocabulary import (
    CRIT_RATE_UPPER,
    DETAIL_ABS_BOUND,
    ELEMENT_TAGS,
    PERCENT_LOWER,
    PERCENT_UPPER,
    SR_DMG_KEY_UPPER,
    SR_KEY_UPPER,
    is_crit_rate_key,
    is_percent_like_key,
)
from calcgen.services.sample_context import (
    MAGNITUDES,
    SAFE_FUNCTIONS,
    DamageResult,
    Magnitude,
    SampleEvalError,
    context_values,
    is_number,
    result_helpers,
)

logger = logging.getLogger(__name__)

CONTEXT_ARGS = ("talent", "attr", "calc", "params", "cons", "weapon", "trees")
RESULT_ARGS = ("dmg", "heal", "shield", "reaction")
DETAIL_ARGS = CONTEXT_ARGS + RESULT_ARGS
BUFF_ARGS = CONTEXT_ARGS + ("current_talent",)

REQUIRED_BINDINGS = ("to_ratio", "details", "buffs", "def_dmg_idx", "def_dmg_key", "main_attr", "created_by")
OPTIONAL_BINDINGS = ("def_params",)

CALLABLE_NAMES = frozenset(("calc", "to_ratio") + RESULT_ARGS) | frozenset(SAFE_FUNCTIONS)

DETAIL_KEYS = frozenset(("title", "talent", "dmg_key", "params", "cons", "check", "dmg"))
BUFF_KEYS = frozenset(("title", "sort", "cons", "tree", "check", "data"))

_ALLOWED_NODES = (
    ast.Module, ast.Assign, ast.Expr, ast.Name, ast.Load, ast.Store, ast.Constant,
    ast.List, ast.Tuple, ast.Dict, ast.Lambda, ast.arguments, ast.arg,
    ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp, ast.Call,
    ast.Attribute, ast.Subscript,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.UAdd, ast.USub, ast.Not, ast.And, ast.Or,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn, ast.Is, ast.IsNot,
)

_EVAL_ERRORS = (InvalidExpression, ArithmeticError, TypeError, ValueError, KeyError, IndexError, AttributeError)


class CheckReport(BaseModel):
    """Summary of a passed check, mostly for logging."""

    detail_count: int
    buff_count: int
    magnitudes: List[str] = Field(default_factory=list)
    detail_values: Dict[str, List[float]] = Field(
        default_factory=dict, description="Magnitude -> evaluated value of every detail row."
    )


# =============================================================================
# SYNTAX PHASE
# =============================================================================

def _where(node: ast.AST) -> str:
    return f"line {getattr(node, 'lineno', '?')}"


class _SafetyVisitor(ast.NodeVisitor):
    """Collects whitelist violations; names are resolved against the enclosing lambda's parameters."""

    def __init__(self):
        self.issues: List[str] = []
        self._scopes: List[frozenset] = []

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            self.issues.append(f"{_where(node)}: {type(node).__name__} is not allowed")
            return
        super().generic_visit(node)

    def visit_Module(self, node: ast.Module) -> None:
        for i, stmt in enumerate(node.body):
            if isinstance(stmt, ast.Expr) and i == 0 and isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str):
                continue
            if not isinstance(stmt, ast.Assign) or len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                self.issues.append(f"{_where(stmt)}: only simple `name = value` statements are allowed")
                continue
            self.visit(stmt.value)

    def visit_Lambda(self, node: ast.Lambda) -> None:
        args = node.args
        if args.posonlyargs or args.vararg or args.kwonlyargs or args.kwarg or args.defaults:
            self.issues.append(f"{_where(node)}: lambdas take plain positional parameters only")
        self._scopes.append(frozenset(a.arg for a in args.args))
        self.visit(node.body)
        self._scopes.pop()

    def visit_Name(self, node: ast.Name) -> None:
        if not self._scopes:
            self.issues.append(f"{_where(node)}: name '{node.id}' outside a row formula")
        elif node.id not in self._scopes[-1] and node.id not in CALLABLE_NAMES:
            self.issues.append(f"{_where(node)}: unknown name '{node.id}'")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self.issues.append(f"{_where(node)}: attribute '{node.attr}' is not allowed")
            return
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            self.issues.append(f"{_where(node)}: constant of type {type(node.value).__name__} is not allowed")

    def visit_Call(self, node: ast.Call) -> None:
        if node.keywords:
            self.issues.append(f"{_where(node)}: keyword arguments are not allowed")
        func = node.func
        if isinstance(func, ast.Name):
            if func.id not in CALLABLE_NAMES:
                self.issues.append(f"{_where(node)}: call to '{func.id}' is not allowed")
        elif not (isinstance(func, ast.Attribute) and func.attr == "basic"
                  and isinstance(func.value, ast.Name) and func.value.id == "dmg"):
            self.issues.append(f"{_where(node)}: only named helpers and dmg.basic may be called")
        for arg in node.args:
            self.visit(arg)
        self.visit(func)


class _RowFormula:
    """A rendered lambda, evaluated with simpleeval instead of being executed."""

    def __init__(self, node: ast.Lambda, globals_functions: Optional[Dict[str, Callable]] = None):
        self.params = tuple(a.arg for a in node.args.args)
        self.body = ast.unparse(node.body)
        self._functions = dict(SAFE_FUNCTIONS)
        self._functions.update(globals_functions or {})

    def __call__(self, *args):
        if len(args) != len(self.params):
            raise TypeError(f"formula takes {len(self.params)} arguments, got {len(args)}")
        names = dict(zip(self.params, args))
        functions = dict(self._functions)
        functions.update({k: v for k, v in names.items() if k in CALLABLE_NAMES})
        return EvalWithCompoundTypes(names=names, functions=functions).eval(self.body)


@dataclass
class DetailEntry:
    title: str
    dmg: _RowFormula
    check: Optional[_RowFormula] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BuffEntry:
    title: str
    data: Dict[str, Union[float, _RowFormula]]
    check: Optional[_RowFormula] = None


@dataclass
class ParsedModule:
    details: List[DetailEntry]
    buffs: List[Union[BuffEntry, str]]
    def_params: Dict[str, Any]
    def_dmg_idx: int


def _literal(node: ast.AST) -> Any:
    try:
        return ast.literal_eval(node)
    except (ValueError, TypeError, SyntaxError):
        return None


def _lambda(node: ast.AST, expected: Sequence[str], where: str, issues: List[str], to_ratio) -> Optional[_RowFormula]:
    if not isinstance(node, ast.Lambda):
        issues.append(f"{where}: must be a lambda")
        return None
    params = tuple(a.arg for a in node.args.args)
    if params != tuple(expected):
        issues.append(f"{where}: lambda parameters must be ({', '.join(expected)})")
        return None
    return _RowFormula(node, {"to_ratio": to_ratio})


def _string_keyed(node: ast.Dict, where: str, issues: List[str]) -> Optional[List[Tuple[str, ast.AST]]]:
    items = []
    for k, v in zip(node.keys, node.values):
        if not (isinstance(k, ast.Constant) and isinstance(k.value, str)):
            issues.append(f"{where}: keys must be string literals")
            return None
        items.append((k.value, v))
    return items


def _parse_detail(node: ast.AST, index: int, issues: List[str], to_ratio) -> Optional[DetailEntry]:
    where = f"details[{index}]"
    if not isinstance(node, ast.Dict):
        issues.append(f"{where}: must be a dict literal")
        return None
    items = _string_keyed(node, where, issues)
    if items is None:
        return None
    fields = dict(items)
    unknown = sorted(set(fields) - DETAIL_KEYS)
    if unknown:
        issues.append(f"{where}: unknown keys {unknown}")
    title = _literal(fields["title"]) if "title" in fields else None
    if not isinstance(title, str) or not title:
        issues.append(f"{where}: title must be a non-empty string")
        return None
    where = f"details[{index}] ({title})"
    for key in ("talent", "dmg_key"):
        if key in fields and not isinstance(_literal(fields[key]), str):
            issues.append(f"{where}: {key} must be a string")
    if "cons" in fields and not isinstance(_literal(fields["cons"]), int):
        issues.append(f"{where}: cons must be an integer")
    params = _literal(fields["params"]) if "params" in fields else {}
    if not isinstance(params, dict):
        issues.append(f"{where}: params must be a literal dict")
        params = {}
    if "dmg" not in fields:
        issues.append(f"{where}: missing dmg formula")
        return None
    dmg = _lambda(fields["dmg"], DETAIL_ARGS, f"{where}.dmg", issues, to_ratio)
    check = _lambda(fields["check"], CONTEXT_ARGS, f"{where}.check", issues, to_ratio) if "check" in fields else None
    if dmg is None:
        return None
    return DetailEntry(title=title, dmg=dmg, check=check, params=params)


def _parse_buff(node: ast.AST, index: int, issues: List[str], to_ratio) -> Optional[Union[BuffEntry, str]]:
    where = f"buffs[{index}]"
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    if not isinstance(node, ast.Dict):
        issues.append(f"{where}: must be a dict literal or a reaction id")
        return None
    items = _string_keyed(node, where, issues)
    if items is None:
        return None
    fields = dict(items)
    unknown = sorted(set(fields) - BUFF_KEYS)
    if unknown:
        issues.append(f"{where}: unknown keys {unknown}")
    title = _literal(fields["title"]) if "title" in fields else None
    if not isinstance(title, str) or not title:
        issues.append(f"{where}: title must be a non-empty string")
        return None
    where = f"buffs[{index}] ({title})"
    for key in ("sort", "cons", "tree"):
        if key in fields and not isinstance(_literal(fields[key]), int):
            issues.append(f"{where}: {key} must be an integer")
    check = _lambda(fields["check"], BUFF_ARGS, f"{where}.check", issues, to_ratio) if "check" in fields else None

    data_node = fields.get("data")
    if not isinstance(data_node, ast.Dict):
        issues.append(f"{where}: data must be a dict literal")
        return None
    data_items = _string_keyed(data_node, f"{where}.data", issues) or []
    data: Dict[str, Union[float, _RowFormula]] = {}
    for key, value_node in data_items:
        if isinstance(value_node, ast.Lambda):
            fn = _lambda(value_node, BUFF_ARGS, f"{where}.data[{key!r}]", issues, to_ratio)
            if fn is not None:
                data[key] = fn
            continue
        value = _literal(value_node)
        if not is_number(value):
            issues.append(f"{where}.data[{key!r}]: must be a number or a lambda")
            continue
        data[key] = value
    return BuffEntry(title=title, data=data, check=check)


def parse_module(source: str) -> ParsedModule:
    """Syntax phase. Returns the row formulas ready for evaluation."""
    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        raise RuntimeCheckError("syntax", [f"line {e.lineno}: {e.msg}"])

    visitor = _SafetyVisitor()
    visitor.visit(tree)
    issues = list(visitor.issues)
    if issues:
        raise RuntimeCheckError("syntax", issues)

    bindings: Dict[str, ast.AST] = {}
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            name = stmt.targets[0].id
            if name in bindings:
                issues.append(f"{_where(stmt)}: '{name}' is bound twice")
            elif name not in REQUIRED_BINDINGS + OPTIONAL_BINDINGS:
                issues.append(f"{_where(stmt)}: unexpected binding '{name}'")
            bindings[name] = stmt.value
    missing = [name for name in REQUIRED_BINDINGS if name not in bindings]
    if missing:
        issues.append(f"missing bindings: {', '.join(missing)}")
        raise RuntimeCheckError("syntax", issues)

    to_ratio_node = bindings["to_ratio"]
    to_ratio = None
    if isinstance(to_ratio_node, ast.Lambda) and len(to_ratio_node.args.args) == 1:
        to_ratio = _RowFormula(to_ratio_node)
    else:
        issues.append("to_ratio must be a one-argument lambda")

    for name in ("def_dmg_key", "main_attr", "created_by"):
        if not isinstance(_literal(bindings[name]), str):
            issues.append(f"{name} must be a string literal")

    details: List[DetailEntry] = []
    if isinstance(bindings["details"], ast.List):
        for i, node in enumerate(bindings["details"].elts):
            entry = _parse_detail(node, i, issues, to_ratio)
            if entry is not None:
                details.append(entry)
        if not bindings["details"].elts:
            issues.append("details must not be empty")
    else:
        issues.append("details must be a list literal")

    buffs: List[Union[BuffEntry, str]] = []
    if isinstance(bindings["buffs"], ast.List):
        for i, node in enumerate(bindings["buffs"].elts):
            entry = _parse_buff(node, i, issues, to_ratio)
            if entry is not None:
                buffs.append(entry)
    else:
        issues.append("buffs must be a list literal")

    def_dmg_idx = _literal(bindings["def_dmg_idx"])
    if not isinstance(def_dmg_idx, int) or isinstance(def_dmg_idx, bool):
        issues.append("def_dmg_idx must be an integer literal")
        def_dmg_idx = 0
    elif isinstance(bindings["details"], ast.List) and not 0 <= def_dmg_idx < len(bindings["details"].elts):
        issues.append(f"def_dmg_idx {def_dmg_idx} is out of range")

    def_params: Dict[str, Any] = {}
    if "def_params" in bindings:
        def_params = _literal(bindings["def_params"])
        if not isinstance(def_params, dict):
            issues.append("def_params must be a literal dict")
            def_params = {}

    if issues:
        raise RuntimeCheckError("syntax", issues)
    return ParsedModule(details=details, buffs=buffs, def_params=def_params, def_dmg_idx=def_dmg_idx)


# =============================================================================
# SEMANTIC PHASE
# =============================================================================

def detail_value(value: Any) -> float:
    """Numeric magnitude of what a detail formula returned."""
    if isinstance(value, DamageResult):
        return value.avg
    if isinstance(value, dict):
        for key in ("avg", "dmg"):
            if is_number(value.get(key)):
                return value[key]
        raise SampleEvalError("result dict has no numeric avg/dmg")
    if is_number(value):
        return value
    raise SampleEvalError(f"formula returned {type(value).__name__}, not a damage result")


def buff_value_issue(game: str, key: str, value: Any) -> Optional[str]:
    """Why a modifier value is implausible, or None."""
    if value is None or value is False or (isinstance(value, str) and value == ""):
        return None
    if value is True:
        return "returned True instead of a number"
    if not is_number(value):
        return f"returned {type(value).__name__} instead of a number"
    if not math.isfinite(value):
        return f"is not finite ({value})"
    if key.startswith("_"):
        return None
    if is_crit_rate_key(key) and value > CRIT_RATE_UPPER:
        return f"crit rate {value:g} > {CRIT_RATE_UPPER:g}"
    if game == "sr" and key in SR_KEY_UPPER and value > SR_KEY_UPPER[key]:
        return f"{value:g} > {SR_KEY_UPPER[key]:g}"
    if is_percent_like_key(key):
        upper = SR_DMG_KEY_UPPER if (game == "sr" and key.endswith("Dmg")) else PERCENT_UPPER
        if not PERCENT_LOWER <= value <= upper:
            return f"{value:g} outside [{PERCENT_LOWER:g}, {upper:g}]"
    return None


def _run(fn: Callable, args: Sequence[Any], where: str, issues: List[str]) -> Tuple[bool, Any]:
    try:
        return True, fn(*args)
    except _EVAL_ERRORS as e:
        issues.append(f"{where}: {type(e).__name__}: {e}")
        return False, None


def _check_magnitude(
    registry: TableRegistry, module: ParsedModule, magnitude: Magnitude
) -> Tuple[List[str], List[float]]:
    game = registry.game
    bound = DETAIL_ABS_BOUND[game]
    helpers = result_helpers(registry, magnitude)
    issues: List[str] = []
    values: List[float] = []

    for i, row in enumerate(module.details):
        where = f"details[{i}] ({row.title})"
        ctx = context_values(registry, magnitude, {**module.def_params, **row.params})
        args = [ctx[name] for name in CONTEXT_ARGS]
        if row.check is not None:
            _run(row.check, args, f"{where}.check", issues)
        ok, result = _run(row.dmg, args + [helpers[name] for name in RESULT_ARGS], f"{where}.dmg", issues)
        if not ok:
            continue
        try:
            value = detail_value(result)
        except SampleEvalError as e:
            issues.append(f"{where}.dmg: {e}")
            continue
        if not math.isfinite(value):
            issues.append(f"{where}.dmg: result is not finite ({value})")
        elif abs(value) > bound:
            issues.append(f"{where}.dmg: |{value:.6g}| exceeds {bound:,}")
        values.append(float(value))

    for i, buff in enumerate(module.buffs):
        if isinstance(buff, str):
            if game != "gs" or buff not in ELEMENT_TAGS["gs"] or buff == "phy":
                issues.append(f"buffs[{i}]: {buff!r} is not a reaction id")
            continue
        where = f"buffs[{i}] ({buff.title})"
        for slot in registry.slots:
            ctx = context_values(registry, magnitude, module.def_params, for_buff=True)
            args = [ctx[name] for name in CONTEXT_ARGS] + [slot]
            if buff.check is not None:
                ok, active = _run(buff.check, args, f"{where}.check", issues)
                # The engine only reads data while the check holds
                if not ok or not active:
                    continue
            for key, value in buff.data.items():
                if isinstance(value, _RowFormula):
                    ok, value = _run(value, args, f"{where}.data[{key!r}]", issues)
                    if not ok:
                        continue
                problem = buff_value_issue(game, key, value)
                if problem:
                    issues.append(f"{where}.data[{key!r}] (current_talent={slot!r}): {problem}")
            if not any(isinstance(v, _RowFormula) for v in buff.data.values()) and buff.check is None:
                break
    return _dedupe(issues), values


def _dedupe(issues: List[str]) -> List[str]:
    seen = []
    for issue in issues:
        if issue not in seen:
            seen.append(issue)
    return seen


def check_rendered(request: CalcRequest, source: str) -> CheckReport:
    """
    Checks a rendered module without executing it.

    Raises RuntimeCheckError with phase "syntax" or "semantic" and every
    issue found; returns a CheckReport when the module passes.
    """
    module = parse_module(source)
    registry = request.registry
    report = CheckReport(detail_count=len(module.details), buff_count=len(module.buffs))
    for magnitude in MAGNITUDES[request.game]:
        issues, values = _check_magnitude(registry, module, magnitude)
        if issues:
            logger.debug(f"Runtime check failed at {magnitude.name} magnitude with {len(issues)} issue(s)")
            raise RuntimeCheckError("semantic", issues, magnitude=magnitude.name)
        report.magnitudes.append(magnitude.name)
        report.detail_values[magnitude.name] = values
    logger.debug(f"Runtime check passed for {request.name}: {report.detail_count} details, {report.buff_count} buffs")
    return report
