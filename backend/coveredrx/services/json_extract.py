# backend/coveredrx/services/json_extract.py
"""
Pull a JSON object out of free-text model output.

Replies from the text-generation backend and the retrieval agent are meant to
be JSON but arrive as bare JSON, JSON inside a ``` fence, or JSON buried in
prose. Each attempt below takes the raw text and returns a dict or None; the
first attempt that yields a dict wins.
"""
import json
import re
from typing import Any, Callable, Dict, List, Optional

FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")

ParseAttempt = Callable[[str], Optional[Dict[str, Any]]]


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = FENCE_RE.search(text)
    return match.group(1) if match else text


def first_json_object(text: str) -> Optional[str]:
    """
    Slice out the first balanced {...} span, honouring braces inside strings.
    Returns None when no opening brace is closed.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def parse_direct(text: str) -> Optional[Dict[str, Any]]:
    return _loads_object(text.strip())


def parse_fenced(text: str) -> Optional[Dict[str, Any]]:
    match = FENCE_RE.search(text)
    if not match:
        return None
    return _loads_object(match.group(1))


def parse_brace_matched(text: str) -> Optional[Dict[str, Any]]:
    candidate = first_json_object(strip_code_fences(text))
    if candidate is None:
        candidate = first_json_object(text)
    return _loads_object(candidate) if candidate else None


DEFAULT_CHAIN: List[ParseAttempt] = [parse_direct, parse_fenced, parse_brace_matched]


def extract_json(text: Optional[str], chain: List[ParseAttempt] = DEFAULT_CHAIN) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    for attempt in chain:
        parsed = attempt(text)
        if parsed is not None:
            return parsed
    return None


def require_json(text: Optional[str], source: str = "response") -> Dict[str, Any]:
    parsed = extract_json(text)
    if parsed is None:
        preview = (text or "")[:120]
        raise ValueError(f"Invalid JSON in {source}: {preview!r}")
    return parsed
