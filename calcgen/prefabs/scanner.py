"""
Balanced-bracket scanner for formula strings.

The permitted call shapes are few and simple, so a character scanner that
understands string literals and bracket depth is enough; no tokenizer or
parser is involved.
"""

import re
from typing import List, Optional, Tuple

_OPEN = "([{"
_CLOSE = ")]}"
_QUOTES = "\"'"

_IDENT_CHAR = re.compile(r"\w")


class UnterminatedString(ValueError):
    pass


def mask_strings(expr: str) -> str:
    """
    Returns `expr` with the contents of every string literal replaced by
    spaces. Quotes stay in place and the length is unchanged, so indices
    found in the mask are valid in the unmasked text.
    """
    out = []
    quote = None
    escaped = False
    for ch in expr:
        if quote:
            if escaped:
                escaped = False
                out.append(" ")
                continue
            if ch == "\\":
                escaped = True
                out.append(" ")
                continue
            if ch == quote:
                quote = None
                out.append(ch)
                continue
            out.append(" ")
            continue
        if ch in _QUOTES:
            quote = ch
        out.append(ch)
    if quote:
        raise UnterminatedString("unterminated string literal")
    return "".join(out)


def is_balanced(expr: str) -> bool:
    try:
        masked = mask_strings(expr)
    except UnterminatedString:
        return False
    stack = []
    for ch in masked:
        if ch in _OPEN:
            stack.append(_CLOSE[_OPEN.index(ch)])
        elif ch in _CLOSE:
            if not stack or stack.pop() != ch:
                return False
    return not stack


def _top_level_mask(expr: str) -> str:
    """Like mask_strings, but also blanks everything nested inside brackets."""
    masked = mask_strings(expr)
    out = []
    depth = 0
    for ch in masked:
        if ch in _OPEN:
            out.append(ch if depth == 0 else " ")
            depth += 1
        elif ch in _CLOSE:
            depth = max(0, depth - 1)
            out.append(ch if depth == 0 else " ")
        else:
            out.append(ch if depth == 0 else " ")
    return "".join(out)


def split_top_level(expr: str, delim: str = ",") -> List[str]:
    masked = _top_level_mask(expr)
    parts = []
    start = 0
    for i, ch in enumerate(masked):
        if ch == delim:
            parts.append(expr[start:i].strip())
            start = i + 1
    tail = expr[start:].strip()
    if tail or parts:
        parts.append(tail)
    return parts


def split_top_level_keyword(expr: str, keyword: str) -> List[str]:
    """Splits on a word operator (`and` / `or`) that is outside brackets and strings."""
    masked = _top_level_mask(expr)
    parts = []
    start = 0
    for m in re.finditer(rf"(?<![\w.]){re.escape(keyword)}(?!\w)", masked):
        parts.append(expr[start:m.start()].strip())
        start = m.end()
    parts.append(expr[start:].strip())
    return parts


def has_top_level_keyword(expr: str, keyword: str) -> bool:
    return len(split_top_level_keyword(expr, keyword)) > 1


def find_closing(expr: str, open_idx: int) -> Optional[int]:
    """Index of the bracket closing the one at `open_idx`, or None."""
    masked = mask_strings(expr)
    depth = 0
    for i in range(open_idx, len(masked)):
        ch = masked[i]
        if ch in _OPEN:
            depth += 1
        elif ch in _CLOSE:
            depth -= 1
            if depth == 0:
                return i
            if depth < 0:
                return None
    return None


def find_calls(expr: str, callee: str) -> List[Tuple[int, int, List[str]]]:
    """
    Every call of `callee` (a plain or dotted name) as (start, end, args).
    `end` is one past the closing parenthesis. Unclosed calls yield end=-1.
    """
    masked = mask_strings(expr)
    pattern = re.compile(rf"(?<![\w.]){re.escape(callee)}\s*\(")
    calls = []
    for m in pattern.finditer(masked):
        open_idx = m.end() - 1
        close_idx = find_closing(expr, open_idx)
        if close_idx is None:
            calls.append((m.start(), -1, []))
            continue
        inner = expr[open_idx + 1:close_idx]
        args = split_top_level(inner) if inner.strip() else []
        calls.append((m.start(), close_idx + 1, args))
    return calls


def strip_outer_parens(expr: str) -> str:
    s = expr.strip()
    for _ in range(5):
        if not (s.startswith("(") and s.endswith(")")):
            break
        if find_closing(s, 0) != len(s) - 1:
            break
        s = s[1:-1].strip()
    return s


def is_string_literal(arg: str) -> bool:
    s = arg.strip()
    if len(s) < 2 or s[0] not in _QUOTES or s[-1] != s[0]:
        return False
    try:
        masked = mask_strings(s)
    except UnterminatedString:
        return False
    # Exactly one literal: no quote survives the mask between the outer two
    return not any(q in masked[1:-1] for q in _QUOTES)


def previous_token(masked: str, idx: int) -> str:
    """The dotted name (or single punctuation char) that ends right before `idx`."""
    j = idx - 1
    while j >= 0 and masked[j] == " ":
        j -= 1
    if j < 0:
        return ""
    if not (_IDENT_CHAR.match(masked[j]) or masked[j] == "."):
        return masked[j]
    end = j + 1
    while j >= 0 and (_IDENT_CHAR.match(masked[j]) or masked[j] == "."):
        j -= 1
    return masked[j + 1:end]
