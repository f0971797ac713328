"""
convoloop Control API
FastAPI application exposing the single control and the turn state to an
external UI.

Every response uses the standard envelope:
    {"ok", "service", "operation", "correlation_id", "duration_ms", "data", "error"}
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .app.controls import ControlGate, control_state
from .voice.turn_router import TurnStateMachine

logger = logging.getLogger(__name__)

SERVICE = "convoloop"


# ============================================================================
# Response Models
# ============================================================================

class HealthCheckResponse(BaseModel):
    ok: bool = True
    service: str = SERVICE
    version: str
    timestamp: str
    running: bool
    state: str
    latency: Dict[str, Any]


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return f"req_{uuid.uuid4().hex[:12]}"


def _envelope(operation: str, correlation_id: str, t0: float, data=None, error=None) -> dict:
    return {
        "ok": error is None,
        "service": SERVICE,
        "operation": operation,
        "correlation_id": correlation_id,
        "duration_ms": round((time.monotonic() - t0) * 1000, 1),
        "data": data,
        "error": error,
    }


def _turn_view(machine: TurnStateMachine) -> dict:
    snapshot = machine.snapshot
    return {
        "session": {"from_id": machine.session.from_id, "to_id": machine.session.to_id},
        "turn": snapshot.to_dict(),
        "control": control_state(snapshot, machine.playback_active).to_dict(),
        "recording": machine.is_recording,
    }


def create_app(machine: TurnStateMachine, gate: Optional[ControlGate] = None) -> FastAPI:
    """Build the control API around a turn machine.

    The lifespan starts the machine if needed and closes it on shutdown.
    """
    gate = gate or ControlGate(machine)

    @asynccontextmanager
    async def _lifespan(a):
        if not machine.running:
            await machine.start()
        logger.info("control api started  session=%s", machine.session.label)
        yield
        await machine.aclose()
        logger.info("control api stopped  session=%s", machine.session.label)

    app = FastAPI(
        title="convoloop",
        description="Turn-taking control surface",
        version=__version__,
        lifespan=_lifespan,
    )

    def _post(operation: str, request: Request, action) -> dict:
        correlation_id = request.headers.get("X-Correlation-ID", generate_correlation_id())
        t0 = time.monotonic()
        action()
        logger.info(
            "control %s  state=%s  corr=%s", operation, machine.state.value, correlation_id,
        )
        return _envelope(operation, correlation_id, t0, data=_turn_view(machine))

    @app.get("/healthz", response_model=HealthCheckResponse)
    async def healthz():
        """Health check with loop details."""
        return HealthCheckResponse(
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
            running=machine.running,
            state=machine.state.value,
            latency=machine.latency.compute_percentiles(),
        )

    @app.get("/v1/turn")
    async def turn_get(request: Request):
        correlation_id = request.headers.get("X-Correlation-ID", generate_correlation_id())
        t0 = time.monotonic()
        return _envelope("turn_get", correlation_id, t0, data=_turn_view(machine))

    @app.post("/v1/turn/start")
    async def turn_start(request: Request):
        return _post("turn_start", request, machine.request_start)

    @app.post("/v1/turn/stop")
    async def turn_stop(request: Request):
        return _post("turn_stop", request, machine.request_stop)

    @app.post("/v1/turn/interrupt")
    async def turn_interrupt(request: Request):
        return _post("turn_interrupt", request, machine.request_interrupt)

    @app.post("/v1/turn/toggle")
    async def turn_toggle(request: Request):
        correlation_id = request.headers.get("X-Correlation-ID", generate_correlation_id())
        t0 = time.monotonic()
        result = gate.press()
        if not result.accepted:
            code = "DEBOUNCED" if result.debounced else "CONTROL_DISABLED"
            return JSONResponse(
                status_code=409,
                content=_envelope(
                    "turn_toggle", correlation_id, t0,
                    error={
                        "code": code,
                        "message": f"toggle rejected in state {result.state}",
                        "details": {"state": result.state},
                    },
                ),
            )
        data = _turn_view(machine)
        data["action"] = result.action
        return _envelope("turn_toggle", correlation_id, t0, data=data)

    return app
