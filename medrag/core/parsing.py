"""
Helpers for reading structured answers out of free-text model output.

Model output is untrusted: it may wrap the JSON in Markdown fences, surround it
with prose, leave trailing commas, or put numbers outside the expected range.
Everything here is tolerant and never raises on bad input.
"""

import json
import math
import re
from typing import Any, Dict, List, Optional

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*(?=[\]}])")


def clean_json(content: str) -> str:
    """Strip Markdown code fences and trailing commas before closing brackets."""
    content = _FENCE_RE.sub("", content.strip())
    return _TRAILING_COMMA_RE.sub("", content)


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Return the first JSON object embedded in `text`, or None.

    The object starts at the first "{". It is decoded in place first, so prose
    after the object does not matter; if that fails, the widest "{...}" span is
    tried as a last resort.
    """
    if not text:
        return None

    cleaned = clean_json(text)
    start = cleaned.find("{")
    if start == -1:
        return None

    try:
        obj, _ = json.JSONDecoder().raw_decode(cleaned, start)
    except json.JSONDecodeError:
        end = cleaned.rfind("}")
        if end <= start:
            return None
        try:
            obj = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            return None

    return obj if isinstance(obj, dict) else None


def clamp_unit(value: Any, default: float = 0.0) -> float:
    """Coerce `value` to a float inside [0, 1]; "85%" reads as 0.85. Non-numeric input yields `default`."""
    scale = 1.0
    if isinstance(value, str):
        value = value.strip()
        if value.endswith("%"):
            value, scale = value[:-1], 100.0
    try:
        number = float(value) / scale
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(max(number, 0.0), 1.0)


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v).strip() for v in value if v is not None and str(v).strip())
    return str(value).strip()


def as_text_list(value: Any) -> List[str]:
    """Coerce a model-provided list field to a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    elif not isinstance(value, (list, tuple)):
        return []
    out = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return out
