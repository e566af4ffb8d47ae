"""httpcraft filters - path extraction for step references and output formatting."""

from __future__ import annotations

import json
import re
from typing import Any

# Path segments: str is an exact object key, int a list index (negative
# counts from the end), None selects every element ([] or [*]) and a
# (start, stop) tuple is a slice such as [1:3] or [:-1].

_INT_RE = re.compile(r"^-?\d+$")
_SLICE_RE = re.compile(r"^(-?\d*):(-?\d*)$")


def _parse_path_segments(path: str) -> list[Any]:
    """Split a step reference path like body.items[0].id into segments.

    A bare numeric part (items.2) indexes a list or an object's "2" key;
    brackets take indices, slices or keys (headers[Content-Type]).
    """
    path = path.strip()
    if path.startswith("$"):
        path = path[1:]
    segments: list = []

    for part in path.split("."):
        part = part.strip()
        if not part:
            continue

        m = re.match(r"^([^\[]*)((?:\[[^\]]*\])+)$", part)
        if m:
            key_part = m.group(1).strip()
            if key_part:
                segments.append(key_part)
            for bracket in re.findall(r"\[([^\]]*)\]", m.group(2)):
                segments.append(_classify_bracket(bracket.strip()))
        elif _INT_RE.match(part):
            segments.append(int(part))
        else:
            segments.append(part)

    return segments


def _classify_bracket(content: str) -> str | int | tuple[int | None, int | None] | None:
    """Classify the contents of a single [...] bracket."""
    if not content or content == "*":
        return None

    sm = _SLICE_RE.match(content)
    if sm:
        start = int(sm.group(1)) if sm.group(1) else None
        stop = int(sm.group(2)) if sm.group(2) else None
        return (start, stop)

    if _INT_RE.match(content):
        return int(content)

    # Quoted keys: ['Content-Type'] or ["id"]
    if len(content) >= 2 and content[0] == content[-1] and content[0] in "'\"":
        return content[1:-1]
    return content


# ── Extraction ───────────────────────────────────────────────────────────


def _step(current: Any, seg: Any) -> list[Any]:
    """Apply one segment to one value, returning every value it selects."""
    if isinstance(seg, str):
        if isinstance(current, dict) and seg in current:
            return [current[seg]]
        return []
    if isinstance(seg, int):
        if isinstance(current, list):
            try:
                return [current[seg]]
            except IndexError:
                return []
        # Numeric segment against an object: {"1": ...}
        if isinstance(current, dict) and str(seg) in current:
            return [current[str(seg)]]
        return []
    if not isinstance(current, list):
        if seg is None and isinstance(current, dict):
            return list(current.values())
        return []
    if seg is None:
        return list(current)
    start, stop = seg
    return current[slice(start, stop)]


def extract_path(data: Any, path: str) -> tuple[bool, Any]:
    """Extract the first value matching *path* in *data*.

    Returns (found, value). Key matching is exact. A path that selects
    several values (``[*]`` or a slice) yields the first match.
    """
    matches = [data]
    for seg in _parse_path_segments(path):
        next_matches: list[Any] = []
        for current in matches:
            next_matches.extend(_step(current, seg))
        matches = next_matches
        if not matches:
            return False, None
    return True, matches[0]


def parse_json_text(text: Any) -> Any:
    """Return *text* parsed as JSON, or unchanged when it is not JSON text."""
    if not isinstance(text, str):
        return text
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text


# ── Output formatting ────────────────────────────────────────────────────


def format_response_summary(response) -> list[str]:
    """Status, timing and header lines for verbose output."""
    lines = [f"STATUS: {response.status} {response.status_text}".rstrip()]
    lines.append(f"TIME: {int(response.elapsed_ms)}ms")
    if response.headers:
        lines.append("HEADERS:")
        for key, value in response.headers.items():
            lines.append(f"  {key}: {value}")
    return lines


def format_request_lines(request: dict, tag: str) -> list[str]:
    """Describe a resolved request as tagged diagnostic lines."""
    lines = [f"{tag} {request['method']} {request['url']}"]
    headers = request.get("headers") or {}
    if headers:
        lines.append(f"{tag} Headers:")
        for key, value in headers.items():
            lines.append(f"{tag}   {key}: {value}")
    body = request.get("body")
    if body is not None:
        body_text = body if isinstance(body, str) else json.dumps(body, indent=2)
        lines.append(f"{tag} Body: {body_text}")
    return lines


def format_chain_output(result, mode: str = "default") -> str:
    """Format a ChainResult for stdout.

    mode "default": raw response body of the last recorded step.
    mode "full":    structured JSON of every step, with request and response
                    bodies parsed when they are valid JSON text.
    """
    if mode == "full":
        data = result.to_dict()
        for step in data["steps"]:
            step["request"]["body"] = parse_json_text(step["request"].get("body"))
            step["response"]["body"] = parse_json_text(step["response"].get("body"))
        return json.dumps(data, indent=2)

    if not result.steps:
        return ""
    return result.steps[-1].response.body
