"""
Verity — API Server

FastAPI application serving:
  POST /v1/workflows/{kind}                  — start an instance
  GET  /v1/workflows/{id}                    — query snapshot
  POST /v1/workflows/{id}/signals/{name}     — deliver a signal
  POST /v1/workflows/{id}/cancel             — request cancellation
  POST /v1/webhooks/{provider}               — signed provider callback
  GET  /v1/stats                             — runtime statistics
  GET  /health                               — liveness
  GET  /metrics                              — text exposition

Usage:
    uvicorn --factory api.server:build_app --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import Request

from api.models import CancelRequest, ErrorBody, SignalAccepted, SignalRequest, StartRequest, StartResponse
from api.webhooks import WebhookVerifier, to_signal
from engine.errors import ErrorCode, ErrorKind, VerityError

logger = logging.getLogger("verity.api")


def _status_for(error: VerityError) -> int:
    if error.code == ErrorCode.WORKFLOW_ALREADY_RUNNING:
        return 409
    if error.kind == ErrorKind.AUTHORIZATION:
        return 401
    return 422


def _error_response(error: VerityError):
    from fastapi.responses import JSONResponse

    details = list(getattr(error, "issues", None) or [])
    body = ErrorBody(error=error.message, code=error.code, details=details)
    return JSONResponse(status_code=_status_for(error), content=body.to_dict())


def create_app(runtime: Any, verifier: WebhookVerifier | None = None) -> Any:
    """
    Create and configure the FastAPI application around a runtime.

    Separated from module-level creation so tests can create fresh
    instances with their own runtime and activity set.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse, PlainTextResponse
    from prometheus_client import CONTENT_TYPE_LATEST

    from coordinator.runtime import InstanceNotFound

    app = FastAPI(
        title="Verity API",
        version="0.1.0",
        description="KYC verification workflows",
    )
    webhooks = verifier or WebhookVerifier(config=runtime.config)

    async def read_json(request: Request) -> Any:
        raw = await request.body()
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON") from None

    async def deliver(instance_id: str, name: str, payload: dict[str, Any]):
        try:
            record = await runtime.signal(instance_id, name, payload)
        except InstanceNotFound:
            raise HTTPException(status_code=404, detail="Instance not found") from None
        except VerityError as e:
            if e.code == ErrorCode.VALIDATION_FAILED and "status" in e.context:
                return JSONResponse(status_code=409, content=ErrorBody(e.message, e.code).to_dict())
            return _error_response(e)
        accepted = SignalAccepted(instance_id=instance_id, signal=name, sequence=record.sequence)
        return JSONResponse(status_code=202, content=accepted.to_dict())

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        await runtime.shutdown()

    # ── Workflows ─────────────────────────────────────────────

    @app.post("/v1/workflows/{kind}")
    async def start_workflow(kind: str, request: Request):
        start = StartRequest(kind=kind, input=await read_json(request))
        errors = start.validate(runtime.kinds)
        if errors:
            return JSONResponse(status_code=422, content=ErrorBody("Invalid request", details=errors).to_dict())
        try:
            instance_id = await runtime.start(kind, start.input)
        except VerityError as e:
            return _error_response(e)
        return JSONResponse(status_code=202, content=StartResponse(instance_id, kind).to_dict())

    @app.get("/v1/workflows/{instance_id}")
    async def get_workflow(instance_id: str):
        try:
            return JSONResponse(content=runtime.query(instance_id))
        except InstanceNotFound:
            raise HTTPException(status_code=404, detail="Instance not found") from None

    @app.post("/v1/workflows/{instance_id}/signals/{name}")
    async def signal_workflow(instance_id: str, name: str, request: Request):
        signal = SignalRequest(name=name, payload=await read_json(request))
        errors = signal.validate()
        if errors:
            return JSONResponse(status_code=422, content=ErrorBody("Invalid signal", details=errors).to_dict())
        return await deliver(instance_id, signal.name, signal.payload)

    @app.post("/v1/workflows/{instance_id}/cancel")
    async def cancel_workflow(instance_id: str, request: Request):
        body = await read_json(request)
        cancel = CancelRequest(reason=body.get("reason", "") if isinstance(body, dict) else "")
        errors = cancel.validate()
        if errors:
            return JSONResponse(status_code=422, content=ErrorBody("Invalid request", details=errors).to_dict())
        try:
            await runtime.cancel(instance_id, cancel.reason)
        except InstanceNotFound:
            raise HTTPException(status_code=404, detail="Instance not found") from None
        except VerityError as e:
            return JSONResponse(status_code=409, content=ErrorBody(e.message, e.code).to_dict())
        return JSONResponse(status_code=202, content={"instance_id": instance_id, "action": "cancel_requested"})

    # ── Webhooks ──────────────────────────────────────────────

    @app.post("/v1/webhooks/{provider}")
    async def provider_webhook(provider: str, request: Request):
        raw = await request.body()
        try:
            webhooks.verify(provider, raw, request.headers.get("X-Signature"))
        except VerityError as e:
            return _error_response(e)
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON") from None
        try:
            instance_id, name, payload = to_signal(provider, body)
        except VerityError as e:
            return _error_response(e)
        logger.info("Webhook accepted: provider=%s instance=%s signal=%s", provider, instance_id, name)
        return await deliver(instance_id, name, payload)

    # ── Stats / Health ────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats():
        return JSONResponse(content=runtime.stats())

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
            "kinds": runtime.kinds,
        })

    @app.get("/metrics")
    async def metrics():
        return PlainTextResponse(runtime.metrics_registry.render_text(), media_type=CONTENT_TYPE_LATEST)

    return app


def build_app() -> Any:
    """Local/demo server over the simulated activity set."""
    from activities import SimulatedActivities
    from engine.config import get_config
    from engine.logging import configure_logging
    from workflows import create_runtime

    config = get_config()
    configure_logging(config=config)
    return create_app(create_runtime(SimulatedActivities(), config=config))
