import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import httpx

logger = logging.getLogger("agent-router.upstream")

# Never copied from the inbound request: connection-specific, or replaced
# by per-target credentials.
STRIPPED_REQUEST_HEADERS = {"host", "authorization", "accept-encoding"}
# The body is re-serialized, so framing headers are recomputed by httpx.
FRAMING_HEADERS = {"content-length", "transfer-encoding", "connection", "keep-alive"}

BEARER_PREFIX = re.compile(r"^Bearer\s+", re.I)


def _timeout_from_env() -> Optional[float]:
    raw = os.getenv("UPSTREAM_TIMEOUT_SEC")
    return float(raw) if raw else None


def resolve_api_key(configured_key: str, inbound_authorization: Optional[str]) -> str:
    """Configured per-model key, else the caller's own bearer token."""
    if configured_key:
        return configured_key
    return BEARER_PREFIX.sub("", inbound_authorization or "")


def build_forward_url(base_url: str, path: str, query: str = "") -> str:
    """Base path (trailing slash stripped) + inbound path, inbound query kept."""
    base = httpx.URL(base_url)
    url = str(base.copy_with(path=base.path.rstrip("/") + path))
    if query:
        # Parsed from text so non-ASCII query bytes are percent-encoded.
        url = str(httpx.URL(f"{url}?{query}"))
    return url


def build_forward_headers(inbound: Iterable[Tuple[str, str]], api_key: str) -> List[Tuple[str, str]]:
    headers = [
        (key, value)
        for key, value in inbound
        if key.lower() not in STRIPPED_REQUEST_HEADERS and key.lower() not in FRAMING_HEADERS
    ]
    headers.append(("Authorization", f"Bearer {api_key}"))
    return headers


def is_openrouter(base_url: str) -> bool:
    return "openrouter" in httpx.URL(base_url).host


def _usage_output_tokens(data: Any) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    usage = data.get("usage")
    if not isinstance(usage, dict):
        # Streaming message_start events nest usage under "message".
        message = data.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
    if isinstance(usage, dict) and isinstance(usage.get("output_tokens"), int):
        return usage["output_tokens"]
    return None


def _sse_output_tokens(text: str) -> Optional[int]:
    found = None
    for line in text.splitlines():
        if not line.startswith("data:"):
            continue
        try:
            tokens = _usage_output_tokens(json.loads(line[5:].strip()))
        except ValueError:
            continue
        if tokens is not None:
            # Later events carry the cumulative count.
            found = tokens
    return found


def extract_output_tokens(body: str, content_type: str = "") -> int:
    """
    Output tokens reported by the backend, else ``len(body) // 4``.

    The length heuristic is a rough best effort for backends that do not
    report usage.
    """
    tokens = None
    if "text/event-stream" in content_type:
        tokens = _sse_output_tokens(body)
    else:
        try:
            tokens = _usage_output_tokens(json.loads(body))
        except ValueError:
            tokens = None
    if tokens is None:
        return len(body) // 4
    return tokens


@dataclass
class UpstreamResponse:
    status_code: int
    headers: List[Tuple[str, str]]
    content: bytes
    text: str
    content_encoding: Optional[str]

    @property
    def content_type(self) -> str:
        for key, value in self.headers:
            if key.lower() == "content-type":
                return value
        return ""

    def client_headers(self) -> List[Tuple[str, str]]:
        """
        Headers to send back to the caller, repeated headers kept as-is.

        httpx has already decoded the body, so when the backend declared a
        content-encoding the body is re-served plain and content-encoding is
        dropped. content-length is always recomputed for the body served.
        """
        dropped = {"transfer-encoding", "connection", "keep-alive", "content-length"}
        if self.content_encoding:
            dropped.add("content-encoding")
        return [(key, value) for key, value in self.headers if key.lower() not in dropped]


class UpstreamClient:
    """Shared async HTTP client for forwarding requests to model backends."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        # No timeout unless configured: calls are awaited to completion.
        if timeout is None:
            timeout = _timeout_from_env()
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def send(
        self,
        method: str,
        url: str,
        headers: List[Tuple[str, str]],
        payload: Mapping[str, Any],
    ) -> UpstreamResponse:
        content = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        logger.debug(f"Forwarding {method} {url} ({len(content)} bytes)")
        resp = await self._client.request(method, url, headers=headers, content=content)
        # Reads and decodes the whole body once.
        body = await resp.aread()
        return UpstreamResponse(
            status_code=resp.status_code,
            headers=list(resp.headers.multi_items()),
            content=body,
            text=resp.text,
            content_encoding=resp.headers.get("content-encoding"),
        )

    async def close(self) -> None:
        await self._client.aclose()
