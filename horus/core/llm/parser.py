"""
LLM Response Parsing

Pulls a JSON payload out of model text (optionally wrapped in a
```json fence) and offers small coercion helpers the stage parsers use
to default fields one at a time instead of trusting the payload.
"""
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from horus.utils import ParseError

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json(text: str) -> str:
    """Return the most plausible JSON substring of ``text``."""
    fenced = _FENCE.search(text)
    if fenced:
        return fenced.group(1).strip()
    obj = _OBJECT.search(text)
    if obj:
        return obj.group(0)
    return text.strip()


def parse_json(text: str, agent: str = "unknown") -> Dict[str, Any]:
    """
    Parse a model response into a JSON object.

    Raises:
        ParseError: no valid JSON object could be found
    """
    if not text or not text.strip():
        raise ParseError("Empty response from model", agent=agent)
    candidate = extract_json(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse model response: {e.msg}", agent=agent,
                         details={"excerpt": candidate[:200]}) from e
    if not isinstance(data, dict):
        raise ParseError("Model response is not a JSON object", agent=agent)
    return data


# ── Coercion helpers ──────────────────────────────────────────────────────────

def as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return default
    return default


def as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def as_str_list(value: Any) -> List[str]:
    return [v for v in as_list(value) if isinstance(v, str) and v.strip()]


def as_choice(value: Any, allowed: Sequence[str], default: Optional[str] = None) -> Optional[str]:
    return value if value in allowed else default
