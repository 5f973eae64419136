"""FastAPI entry point for the intersection controller REST API.

Run with:
    uvicorn traffic_dfa.main:app

Environment:
    TRAFFIC_DFA_STATE_DIR   where configuration and event log are kept
    TRAFFIC_DFA_LOG_LEVEL   logging level (default INFO)
    TRAFFIC_DFA_AUTOSTART   "1" to start the cycle as soon as the app is up
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .errors import InvalidConfiguration
from .models import (
    CommandResponse,
    ConfigUpdate,
    DensityRequest,
    EventEntry,
    IntersectionState,
    SignalConfig,
    SpeedRequest,
    StatisticsSnapshot,
)
from .persistence import StateStore
from .scheduler import AsyncioScheduler
from .simulator import IntersectionSimulator

logging.basicConfig(
    level=os.getenv("TRAFFIC_DFA_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(simulator: IntersectionSimulator | None = None) -> FastAPI:
    """Build the API around ``simulator``.

    Without one, a simulator on the event loop clock with on-disk
    persistence is created when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sim = simulator
        if sim is None:
            sim = IntersectionSimulator(scheduler=AsyncioScheduler(), store=StateStore())
            if os.getenv("TRAFFIC_DFA_AUTOSTART") == "1":
                sim.play()
        app.state.simulator = sim
        logger.info("Intersection controller ready in phase %s", sim.current_phase.name)
        yield
        if simulator is None:
            sim.pause()
        sim.save()

    app = FastAPI(
        title="Traffic DFA Controller API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _sim(request: Request) -> IntersectionSimulator:
    return request.app.state.simulator


def _respond(sim: IntersectionSimulator, ok: bool) -> CommandResponse:
    return CommandResponse(ok=ok, state=sim.snapshot())


# ---------------------------------------------------------------------------
# API routes
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:

    @app.get("/api/state", response_model=IntersectionState)
    async def get_state(request: Request):
        """Current phase, lights, overlays and timing."""
        return _sim(request).snapshot()

    @app.get("/api/stats", response_model=StatisticsSnapshot)
    async def get_stats(request: Request):
        return _sim(request).statistics()

    @app.get("/api/events", response_model=list[EventEntry])
    async def get_events(request: Request, limit: int | None = None):
        """Event log, most recent first."""
        entries = _sim(request).event_log()
        if limit is not None:
            entries = entries[:max(0, limit)]
        return entries

    @app.get("/api/config", response_model=SignalConfig)
    async def get_config(request: Request):
        return _sim(request).config

    @app.put("/api/config", response_model=SignalConfig)
    async def put_config(update: ConfigUpdate, request: Request):
        """Merge a partial configuration.

        The phase in progress keeps its elapsed time.
        """
        try:
            return _sim(request).update_configuration(update)
        except InvalidConfiguration as exc:
            raise HTTPException(status_code=422, detail=exc.errors or str(exc))

    @app.post("/api/play", response_model=CommandResponse)
    async def play(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.play())

    @app.post("/api/pause", response_model=CommandResponse)
    async def pause(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.pause())

    @app.post("/api/reset", response_model=CommandResponse)
    async def reset(request: Request):
        sim = _sim(request)
        sim.reset()
        return _respond(sim, True)

    @app.post("/api/step", response_model=CommandResponse)
    async def step(request: Request):
        """Leave the current phase immediately."""
        sim = _sim(request)
        return _respond(sim, sim.step())

    @app.post("/api/speed", response_model=CommandResponse)
    async def speed(req: SpeedRequest, request: Request):
        sim = _sim(request)
        try:
            sim.set_speed_factor(req.factor)
        except InvalidConfiguration as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return _respond(sim, True)

    @app.post("/api/density", response_model=CommandResponse)
    async def density(req: DensityRequest, request: Request):
        sim = _sim(request)
        sim.set_density(req.density)
        return _respond(sim, True)

    @app.post("/api/pedestrian", response_model=CommandResponse)
    async def pedestrian(request: Request):
        """Queue a crossing for the next transition.

        `ok` is false when one is already pending or the walk phase is on.
        """
        sim = _sim(request)
        return _respond(sim, sim.request_pedestrian())

    @app.post("/api/emergency", response_model=CommandResponse)
    async def emergency(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.activate_emergency())

    @app.post("/api/emergency/cancel", response_model=CommandResponse)
    async def cancel_emergency(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.cancel_emergency())

    @app.post("/api/force-red", response_model=CommandResponse)
    async def force_red(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.force_red())

    @app.post("/api/force-green", response_model=CommandResponse)
    async def force_green(request: Request):
        sim = _sim(request)
        return _respond(sim, sim.force_green())


app = create_app()
