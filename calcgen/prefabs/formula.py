"""
Formula Safety Grammar
======================
Classifies generator-authored formula strings before they are allowed into
a plan. Formulas are Python expressions over a fixed set of context names:

    talent.e["Skill DMG"]            registry lookup (literal key only)
    calc(attr.atk)                   numeric aggregation of one attribute
    dmg(x, "e") / dmg.basic(x, "e", "vaporize")
    params.q and cons >= 2           free-variable bag and tier counter

The grammar is a conjunction of scanner/regex predicates tuned to these
shapes. Callers only see the functions in this module, so the scanner can
be replaced by a tokenizer without touching them.

Checkers return an error string, or None when the formula is acceptable.
"""

import ast
import logging
import re
from typing import FrozenSet, List, Optional, Set, Tuple

from calcgen.models.request import TableRegistry
from calcgen.models.vocabulary import ATTR_FIELDS
from calcgen.prefabs.scanner import (
    UnterminatedString,
    find_calls,
    find_closing,
    is_balanced,
    is_string_literal,
    mask_strings,
    previous_token,
    split_top_level,
)

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH = 1500

SAFE_FUNCTIONS = frozenset(("max", "min", "abs", "round", "floor", "ceil"))

CONTEXT_NAMES = frozenset(("talent", "attr", "calc", "params", "cons", "weapon", "trees"))
GUARD_NAMES = CONTEXT_NAMES | SAFE_FUNCTIONS
BUFF_NAMES = GUARD_NAMES | {"current_talent"}
DETAIL_EXPR_NAMES = GUARD_NAMES | {"dmg", "heal", "shield", "reaction", "to_ratio"}

CALLABLES = {
    "guard": SAFE_FUNCTIONS | {"calc"},
    "buff": SAFE_FUNCTIONS | {"calc"},
    "detail": SAFE_FUNCTIONS | {"calc", "dmg", "dmg.basic", "heal", "shield", "reaction", "to_ratio"},
}

_KEYWORDS = frozenset(("and", "or", "not", "if", "else", "in", "is", "True", "False", "None"))

DENY_WORDS = frozenset(
    (
        "import", "from", "exec", "eval", "compile", "open", "globals", "locals",
        "vars", "dir", "getattr", "setattr", "delattr", "lambda", "def", "class",
        "while", "for", "try", "except", "finally", "raise", "with", "yield",
        "await", "async", "del", "global", "nonlocal", "return", "pass", "assert",
        "break", "continue", "self", "object", "type", "super", "print", "input",
        "breakpoint", "os", "sys", "subprocess", "builtins", "function", "this",
    )
)

_IDENT_RE = re.compile(r"(?<![\w.])([^\W\d]\w*)")
_ATTR_NAME_RE = re.compile(r"\.\s*([^\W\d]\w*)")
_PARAM_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,39}$")
_TABLE_REF_RE = re.compile(
    r"""talent\.([A-Za-z][A-Za-z0-9]*)\[\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')\s*\]"""
)
_CALC_ARG_RE = re.compile(r"^attr\.([A-Za-z]+)$")
_KEYWORD_ARG_RE = re.compile(r"^[A-Za-z_]\w*\s*=[^=]")
_ATTR_ALIAS_RE = re.compile(r"(?<![\w.])attr\s*\.\s*(def|defence)\b")


# =============================================================================
# BASIC SAFETY
# =============================================================================

def _mask(expr: str) -> Optional[str]:
    try:
        return mask_strings(expr)
    except UnterminatedString:
        return None


def canonical_attr_names(expr: str) -> str:
    """Rewrites `attr.def` and `attr.defence` to `attr.defense`; `def` is a keyword in the rendered module."""
    masked = _mask(expr)
    if masked is None:
        return expr
    out = []
    last = 0
    for m in _ATTR_ALIAS_RE.finditer(masked):
        out.append(expr[last:m.start(1)])
        out.append("defense")
        last = m.end(1)
    out.append(expr[last:])
    return "".join(out)


def is_safe_expression(expr: object) -> bool:
    """
    True when `expr` is a single-line expression with no statement
    separators, comments, function syntax, multi-line strings, dunder
    access or reserved escape-hatch identifiers.
    """
    if not isinstance(expr, str):
        return False
    s = expr.strip()
    if not s or len(s) > MAX_EXPRESSION_LENGTH:
        return False
    if "\n" in s or "\r" in s or '"""' in s or "'''" in s:
        return False
    masked = _mask(s)
    if masked is None:
        return False
    if any(tok in masked for tok in (";", "#", "\\", "`", "@", ":=", "__")):
        return False
    if re.search(r"\.\s*_", masked):
        return False
    for m in _IDENT_RE.finditer(masked):
        if m.group(1) in DENY_WORDS:
            return False
    if not is_balanced(s):
        return False
    # A top-level comma would turn the formula into a tuple
    return len(split_top_level(s)) <= 1


def is_safe_value_expression(expr: object) -> bool:
    """is_safe_expression, and additionally no assignment operators (comparisons are fine)."""
    if not is_safe_expression(expr):
        return False
    masked = mask_strings(expr.strip())
    without_comparisons = re.sub(r"==|!=|<=|>=", "  ", masked)
    return "=" not in without_comparisons


# =============================================================================
# REFERENCE CHECKERS
# =============================================================================

def _unquote(literal: str) -> str:
    return ast.literal_eval(literal)


def referenced_tables(expr: str) -> List[Tuple[str, str]]:
    """Every (slot, table) pair read through `talent.<slot>["<table>"]`, in order."""
    if not isinstance(expr, str):
        return []
    refs = []
    for m in _TABLE_REF_RE.finditer(expr):
        try:
            refs.append((m.group(1), _unquote(m.group(2))))
        except (ValueError, SyntaxError):
            continue
    return refs


def referenced_free_vars(expr: str) -> Set[str]:
    """Names read from the free-variable bag (`params.<name>`)."""
    if not isinstance(expr, str):
        return set()
    masked = _mask(expr)
    if masked is None:
        return set()
    return set(re.findall(r"(?<![\w.])params\s*\.\s*([^\W\d]\w*)", masked))


def check_table_refs(expr: str, registry: TableRegistry) -> Optional[str]:
    masked = _mask(expr)
    if masked is None:
        return "unterminated string literal"
    for m in re.finditer(r"(?<![\w.])talent(?!\w)", masked):
        ref = _TABLE_REF_RE.match(expr, m.start())
        if not ref:
            snippet = expr[m.start():m.start() + 40]
            return f'talent must be read as talent.<slot>["<table>"], got "{snippet}"'
        slot = ref.group(1)
        try:
            table = _unquote(ref.group(2))
        except (ValueError, SyntaxError):
            return f"bad table literal {ref.group(2)}"
        if not registry.has_slot(slot):
            return f"unknown slot talent.{slot}"
        if not registry.has_table(slot, table):
            return f'unknown table talent.{slot}["{table}"]'
        rest = masked[ref.end():].lstrip()
        if rest.startswith("."):
            return f'table value talent.{slot}["{table}"] has no attributes'
    return None


def check_calc_calls(expr: str) -> Optional[str]:
    masked = _mask(expr)
    if masked is None:
        return "unterminated string literal"
    valid_attr_refs = 0
    for m in re.finditer(r"(?<![\w.])calc(?!\w)", masked):
        rest = masked[m.end():].lstrip()
        if not rest.startswith("("):
            return "calc is a function taking attr.<field>; calc.<x> and bare calc are not allowed"
    for start, end, args in find_calls(expr, "calc"):
        if end < 0:
            return "unclosed calc( call"
        if len(args) != 1:
            return f"calc() takes exactly one argument, got {len(args)}"
        arg_match = _CALC_ARG_RE.match(args[0].strip())
        if not arg_match:
            return f'calc() argument must be attr.<field>, got "{args[0].strip()}"'
        if arg_match.group(1) not in ATTR_FIELDS:
            return f"unknown attribute attr.{arg_match.group(1)}"
        valid_attr_refs += 1
    attr_refs = len(re.findall(r"(?<![\w.])attr(?!\w)", masked))
    if attr_refs > valid_attr_refs:
        return "attr.<field> may only appear inside calc(...)"
    return None


def _check_result_arg(arg: str, position: int, call: str) -> Optional[str]:
    a = arg.strip()
    if not a:
        return f"{call}(...) has an empty argument"
    if _KEYWORD_ARG_RE.match(a):
        return f"{call}(...) takes positional arguments only"
    if a.startswith("{"):
        return f"{call}(...) argument {position} must not be an object literal"
    if a.startswith("["):
        return f"{call}(...) argument {position} must not be an array literal"
    return None


def check_damage_calls(expr: str) -> Optional[str]:
    """
    dmg(x, "key"[, "ele"]) and dmg.basic(x, "key"[, "ele"]): two or three
    positional arguments, key and element as string literals.
    heal(x) / shield(x): one argument. reaction("id"): one string literal.
    """
    masked = _mask(expr)
    if masked is None:
        return "unterminated string literal"

    for m in re.finditer(r"(?<![\w.])dmg(?!\w)", masked):
        rest = masked[m.end():].lstrip()
        if rest.startswith("("):
            continue
        if re.match(r"\.\s*basic\s*\(", rest):
            continue
        return "dmg must be called as dmg(...) or dmg.basic(...)"

    for callee in ("dmg", "dmg.basic"):
        for start, end, args in find_calls(expr, callee):
            if end < 0:
                return f"unclosed {callee}( call"
            if not 2 <= len(args) <= 3:
                return f"{callee}(...) takes 2-3 arguments, got {len(args)}"
            for i, arg in enumerate(args, start=1):
                problem = _check_result_arg(arg, i, callee)
                if problem:
                    return problem
            if not is_string_literal(args[1]):
                return f"{callee}(...) second argument must be a string literal key"
            if len(args) == 3 and not is_string_literal(args[2]):
                return f"{callee}(...) third argument must be a string literal element, got {args[2].strip()[:30]}"

    for callee in ("heal", "shield"):
        for start, end, args in find_calls(expr, callee):
            if end < 0:
                return f"unclosed {callee}( call"
            if len(args) != 1:
                return f"{callee}(...) takes exactly one argument"
            problem = _check_result_arg(args[0], 1, callee)
            if problem:
                return problem

    for start, end, args in find_calls(expr, "reaction"):
        if end < 0:
            return "unclosed reaction( call"
        if len(args) != 1 or not is_string_literal(args[0]):
            return 'reaction(...) takes a single string literal id'
    return None


def check_free_vars(expr: str, allowed_names: FrozenSet[str]) -> Optional[str]:
    masked = _mask(expr)
    if masked is None:
        return "unterminated string literal"
    for m in _IDENT_RE.finditer(masked):
        name = m.group(1)
        if name in _KEYWORDS or name in allowed_names:
            continue
        return f"unknown name '{name}'"
    for m in re.finditer(r"(?<![\w.])params(?!\w)", masked):
        rest = masked[m.end():].lstrip()
        if not rest.startswith("."):
            return "params must be read as params.<name>"
        name_match = _ATTR_NAME_RE.match(rest)
        if not name_match or not _PARAM_NAME_RE.match(name_match.group(1)):
            return "params.<name> must be an ASCII identifier"
    return None


def check_call_targets(expr: str, allowed_callables: FrozenSet[str]) -> Optional[str]:
    """Every call site must name an allowed function; no calls on call results or subscripts."""
    masked = _mask(expr)
    if masked is None:
        return "unterminated string literal"
    for i, ch in enumerate(masked):
        if ch != "(":
            continue
        callee = previous_token(masked, i)
        if not callee or not (callee[0].isalpha() or callee[0] == "_"):
            if callee in (")", "]"):
                return "calling the result of an expression is not allowed"
            continue
        if callee in _KEYWORDS:
            continue
        if callee not in allowed_callables:
            return f"call to '{callee}' is not allowed"
    return None


# =============================================================================
# COMPOSITE VALIDATORS
# =============================================================================

def _first_error(*checks) -> Optional[str]:
    for check in checks:
        problem = check()
        if problem:
            return problem
    return None


def validate_guard(expr: str, registry: TableRegistry, for_buff: bool = False) -> Optional[str]:
    """Guards (`check`) of detail rows and buffs."""
    if not is_safe_value_expression(expr):
        return "not a safe single expression"
    names = BUFF_NAMES if for_buff else GUARD_NAMES
    return _first_error(
        lambda: check_free_vars(expr, names),
        lambda: check_call_targets(expr, CALLABLES["buff" if for_buff else "guard"]),
        lambda: check_table_refs(expr, registry),
        lambda: check_calc_calls(expr),
    )


def validate_value_expression(expr: str, registry: TableRegistry) -> Optional[str]:
    """Buff data values."""
    if not is_safe_value_expression(expr):
        return "not a safe single expression"
    return _first_error(
        lambda: check_free_vars(expr, BUFF_NAMES),
        lambda: check_call_targets(expr, CALLABLES["buff"]),
        lambda: check_table_refs(expr, registry),
        lambda: check_calc_calls(expr),
    )


def validate_custom_expression(expr: str, registry: TableRegistry, needs_table: bool = True) -> Optional[str]:
    """
    Custom detail formulas (`dmg_expr`). Must call a result helper and, for
    table rows, read at least one registry table.
    """
    if not is_safe_expression(expr):
        return "not a safe single expression"
    problem = _first_error(
        lambda: check_free_vars(expr, DETAIL_EXPR_NAMES),
        lambda: check_call_targets(expr, CALLABLES["detail"]),
        lambda: check_damage_calls(expr),
        lambda: check_table_refs(expr, registry),
        lambda: check_calc_calls(expr),
    )
    if problem:
        return problem
    masked = mask_strings(expr)
    if not re.search(r"(?<![\w.])(dmg|heal|shield|reaction)\s*(\.\s*basic\s*)?\(", masked) and not masked.lstrip().startswith("{"):
        return "custom expression must return dmg(...), dmg.basic(...), heal(...), shield(...), reaction(...) or a {dmg, avg} dict"
    if masked.lstrip().startswith("{"):
        pairs = split_dict_literal(expr)
        if not pairs or any(key not in ("dmg", "avg") for key, _ in pairs):
            return 'a dict result must be a literal {"dmg": ..., "avg": ...}'
    if needs_table and not referenced_tables(expr):
        return "custom expression must read at least one talent table"
    return None


def split_dict_literal(expr: str) -> Optional[List[Tuple[str, str]]]:
    """Key/value pairs of a top-level `{"k": v, ...}` literal, or None."""
    s = expr.strip()
    if not s.startswith("{") or find_closing(s, 0) != len(s) - 1:
        return None
    pairs = []
    for item in split_top_level(s[1:-1]):
        if not item:
            continue
        kv = split_top_level(item, ":")
        if len(kv) != 2 or not is_string_literal(kv[0]):
            return None
        pairs.append((_unquote(kv[0].strip()), kv[1]))
    return pairs
