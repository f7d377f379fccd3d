import json
import re
from typing import Any, Dict

from calcgen.errors import GeneratorError

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def parse_json_from_llm_text(text: str) -> Dict[str, Any]:
    """
    The JSON object inside a model reply.

    Models wrap the object in markdown fences or prose often enough that a
    plain json.loads is not enough: fences are stripped first, then the
    text between the first "{" and the last "}" is parsed.
    """
    if not isinstance(text, str) or not text.strip():
        raise GeneratorError("empty reply")
    candidate = text.strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start < 0 or end <= start:
            raise GeneratorError("reply contains no JSON object")
        try:
            data = json.loads(candidate[start:end + 1])
        except json.JSONDecodeError as e:
            raise GeneratorError(f"reply is not valid JSON: {e.msg} at char {e.pos}")

    if not isinstance(data, dict):
        raise GeneratorError(f"reply is a JSON {type(data).__name__}, expected an object")
    return data
