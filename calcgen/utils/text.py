import re
from typing import Any

_TAG_RE = re.compile(r"<[^>]{1,80}>")
_WS_RE = re.compile(r"\s+")


def normalize_prompt_text(value: Any) -> str:
    """Flattens upstream description text (markup, literal \\n, nbsp) into one line."""
    if value is None:
        return ""
    s = str(value)
    s = s.replace(" ", " ").replace("\\n", " ")
    s = re.sub(r"<br\s*/?>", " ", s, flags=re.IGNORECASE)
    s = _TAG_RE.sub("", s)
    return _WS_RE.sub(" ", s).strip()


def shorten_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 1)].rstrip() + "…"
