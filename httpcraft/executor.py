"""httpcraft executor - HTTP request execution."""

import json
import time
from typing import Any

import requests

from httpcraft.errors import TransportError


class HttpResponse:
    """Response of an HTTP request. The body is kept as raw text."""

    def __init__(
        self,
        status: int = 0,
        status_text: str = "",
        headers: dict[str, str] | None = None,
        body: str = "",
        elapsed_ms: float = 0,
    ):
        self.status = status
        self.status_text = status_text
        self.headers = headers or {}
        self.body = body
        self.elapsed_ms = elapsed_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": dict(self.headers),
            "body": self.body,
        }


def encode_body(body: Any, headers: dict[str, str]) -> bytes | None:
    """Encode a resolved request body for the wire.

    Strings are sent as-is. Structured bodies are sent as JSON and get a
    Content-Type header unless one is already set.
    """
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    if not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(body).encode("utf-8")


def execute_request(request: dict, timeout: int = 30) -> HttpResponse:
    """Execute a resolved request {method, url, headers, body}.

    - HTTP error statuses are returned, never raised
    - Captures timing
    - Raises TransportError when no response could be obtained
    """
    headers = dict(request.get("headers") or {})
    data = encode_body(request.get("body"), headers)

    try:
        start = time.monotonic()
        resp = requests.request(
            method=request["method"].upper(),
            url=request["url"],
            headers=headers,
            data=data,
            timeout=timeout,
            allow_redirects=True,
        )
        elapsed_ms = (time.monotonic() - start) * 1000
    except requests.exceptions.Timeout as e:
        raise TransportError(f"Request timed out after {timeout}s") from e
    except requests.exceptions.ConnectionError as e:
        raise TransportError(f"Connection error: {e}") from e
    except requests.exceptions.RequestException as e:
        raise TransportError(f"Request failed: {e}") from e

    return HttpResponse(
        status=resp.status_code,
        status_text=resp.reason or "",
        headers=dict(resp.headers),
        body=resp.text,
        elapsed_ms=elapsed_ms,
    )
