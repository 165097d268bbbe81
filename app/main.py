import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from graph.tokens import estimate_tokens as tiktoken_estimate
from graph.tokens import serialize
from providers.upstream_client import UpstreamClient
from services.config_store import ConfigStore
from services.gateway import InboundRequest, MessagesGateway
from services.metrics import RequestMetric, TelemetryState, TelemetryStore

# ---------- Structured Logging ----------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"time":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger("agent-router")


def log_metric(metric: RequestMetric, _state: TelemetryState) -> None:
    """One log line per recorded request."""
    event = {
        "evt": "request_recorded",
        "status": "OK" if metric.status == "success" else "ERR",
        "model": metric.model,
        "in": metric.input_tokens,
        "out": metric.output_tokens,
        "lat_ms": metric.latency_ms,
    }
    if metric.original_model and metric.original_model != metric.model:
        event["original"] = metric.original_model
    if metric.routing_reason:
        event["routing"] = metric.routing_reason
    if metric.agent_type:
        event["agent"] = metric.agent_type
    if metric.tokens_per_second > 0:
        event["tps"] = round(metric.tokens_per_second, 1)
    if metric.status == "error" and metric.error_message:
        event["error"] = metric.error_message
    logger.info(json.dumps(event))


def create_app(
    config_store: Optional[ConfigStore] = None,
    telemetry: Optional[TelemetryStore] = None,
    estimate_tokens: Callable[[str], int] = tiktoken_estimate,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the router application.

    Collaborators are injected so tests can swap the config file, the
    telemetry store, the tokenizer and the upstream transport.
    """
    if config_store is None:
        config_store = ConfigStore()
    if telemetry is None:
        telemetry = TelemetryStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Fail fast: a routing table pointing at an undefined model aborts startup.
        config = config_store.get_config()
        logger.info(f"Config validated. {len(config.models)} models registered ({config_store.path}).")

        upstream = UpstreamClient(transport=upstream_transport)
        app.state.gateway = MessagesGateway(config_store, telemetry, upstream, estimate_tokens)
        unsubscribe = telemetry.subscribe(log_metric)
        yield
        unsubscribe()
        telemetry.close()
        await upstream.close()
        logger.info("Shutting down agent router.")

    # No trailing-slash redirects: unmatched paths get the JSON 404.
    app = FastAPI(title="Agent Router", version="1.0.0", lifespan=lifespan, redirect_slashes=False)
    app.state.config_store = config_store
    app.state.telemetry = telemetry
    app.state.estimate_tokens = estimate_tokens

    # Init Metrics
    Instrumentator(registry=CollectorRegistry()).instrument(app).expose(app, include_in_schema=False)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
        allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        path = request.url.path
        if exc.status_code == 404:
            return JSONResponse({"error": "Not Found", "path": path}, status_code=404)
        if exc.status_code == 405:
            return JSONResponse(
                {"error": "Method Not Allowed", "method": request.method.upper(), "path": path},
                status_code=405,
                headers=exc.headers,
            )
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)

    # Global Exception Handler for clean 500s
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Server error on {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.post("/v1/messages")
    async def messages(request: Request):
        inbound = InboundRequest(
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            headers=request.headers.items(),
            body=await request.body(),
        )
        result = await request.app.state.gateway.handle(inbound)
        response = Response(content=result.content, status_code=result.status_code)
        # Repeated headers (set-cookie etc.) are kept as separate lines.
        for key, value in result.headers:
            response.headers.append(key, value)
        return response

    @app.post("/v1/messages/count_tokens")
    async def count_tokens(request: Request):
        try:
            body = json.loads(await request.body())
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        return {"tokens": request.app.state.estimate_tokens(serialize(body))}

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": request.app.state.telemetry.get_uptime_ms() / 1000,
        }

    # --- /debug/metrics: read-only telemetry snapshot ---
    @app.get("/debug/metrics")
    async def debug_metrics(request: Request):
        return request.app.state.telemetry.get_state().to_dict()

    return app


app = create_app()
