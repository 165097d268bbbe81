"""
Forwarding gateway for /v1/messages.

Per request: parse body -> estimate input tokens -> route -> rewrite body and
headers for the target -> forward -> extract usage -> record exactly one
telemetry record -> respond. Every failure is caught once at the top and
turned into an error record plus a JSON error response.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from graph.router import RoutingDecision, determine_routing
from graph.schemas import MessagesRequest
from graph.tokens import serialize
from providers.upstream_client import (
    UpstreamClient,
    UpstreamResponse,
    build_forward_headers,
    build_forward_url,
    extract_output_tokens,
    is_openrouter,
    resolve_api_key,
)
from services.config_store import ConfigStore
from services.errors import BodyParseError, UpstreamError
from services.metrics import UNKNOWN_MODEL, RequestMetric, TelemetryStore

logger = logging.getLogger("agent-router.gateway")

TokenEstimator = Callable[[str], int]


@dataclass
class InboundRequest:
    """Transport-neutral view of the caller's request."""
    method: str
    path: str
    query: str
    headers: List[Tuple[str, str]]
    body: bytes


@dataclass
class GatewayResponse:
    status_code: int
    content: bytes
    headers: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def json(cls, data: Any, status_code: int) -> "GatewayResponse":
        return cls(
            status_code=status_code,
            content=json.dumps(data).encode("utf-8"),
            headers=[("content-type", "application/json")],
        )


def parse_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise BodyParseError(str(e)) from e


def tokens_per_second(output_tokens: int, latency_ms: int) -> float:
    if output_tokens > 0 and latency_ms > 0:
        return output_tokens / latency_ms * 1000
    return 0.0


def _header(headers, name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


class MessagesGateway:
    def __init__(
        self,
        config_store: ConfigStore,
        telemetry: TelemetryStore,
        upstream: UpstreamClient,
        estimate_tokens: TokenEstimator,
    ):
        self.config_store = config_store
        self.telemetry = telemetry
        self.upstream = upstream
        self.estimate_tokens = estimate_tokens

    def estimate_input_tokens(self, messages: Any) -> int:
        if not isinstance(messages, list):
            return 0
        return self.estimate_tokens(serialize(messages))

    async def handle(self, request: InboundRequest) -> GatewayResponse:
        t0 = time.perf_counter()
        original_model = ""
        model_name = ""
        input_tokens = 0

        def elapsed_ms() -> int:
            return int((time.perf_counter() - t0) * 1000)

        try:
            body = parse_body(request.body)
            envelope = MessagesRequest.model_validate(body)
            original_model = envelope.model

            input_tokens = self.estimate_input_tokens(envelope.messages)

            config = self.config_store.get_config()
            routing = determine_routing(
                original_model,
                envelope.system,
                envelope.messages,
                config.agent_model_map,
                config.orchestrator_model_map,
            )
            model_name = routing.target_model

            upstream_resp = await self._forward(request, envelope, routing, config.models[model_name])

            output_tokens = extract_output_tokens(upstream_resp.text, upstream_resp.content_type)
            latency_ms = elapsed_ms()
            self.telemetry.record_request(RequestMetric(
                model=model_name,
                original_model=original_model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                latency_ms=latency_ms,
                tokens_per_second=tokens_per_second(output_tokens, latency_ms),
                status="success",
                agent_type=routing.agent_type,
                routing_reason=routing.reason,
            ))
            return self._reconcile(upstream_resp)

        except Exception as e:
            self.telemetry.record_request(RequestMetric(
                model=model_name or UNKNOWN_MODEL,
                original_model=original_model or UNKNOWN_MODEL,
                input_tokens=input_tokens,
                output_tokens=0,
                latency_ms=elapsed_ms(),
                tokens_per_second=0.0,
                status="error",
                error_message=str(e) or type(e).__name__,
            ))
            logger.error(f"Error in messages handler: {type(e).__name__}: {e}")
            if isinstance(e, BodyParseError):
                return GatewayResponse.json({"error": "Invalid JSON body"}, 400)
            return GatewayResponse.json({"error": "Internal server error"}, 500)

    async def _forward(self, request: InboundRequest, envelope: MessagesRequest, routing: RoutingDecision, model_cfg) -> UpstreamResponse:
        model_name = routing.target_model
        envelope.retarget(model_name)

        # Non-Claude backends reject the "adaptive" thinking mode.
        if "claude" not in model_name.lower():
            envelope.enable_thinking()

        # OpenRouter rejects user ids longer than 128 characters.
        payload = envelope.to_payload(drop_user_id=is_openrouter(model_cfg.url))

        url = build_forward_url(model_cfg.url, request.path, request.query)
        api_key = resolve_api_key(model_cfg.api_key, _header(request.headers, "authorization"))
        headers = build_forward_headers(request.headers, api_key)

        try:
            return await self.upstream.send(request.method, url, headers, payload)
        except Exception as e:
            raise UpstreamError(f"Forward to {model_name} failed: {type(e).__name__}: {e}") from e

    @staticmethod
    def _reconcile(upstream_resp: UpstreamResponse) -> GatewayResponse:
        return GatewayResponse(
            status_code=upstream_resp.status_code,
            content=upstream_resp.content,
            headers=upstream_resp.client_headers(),
        )
