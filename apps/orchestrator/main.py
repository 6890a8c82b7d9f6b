from typing import Any, Dict, List

from fastapi import FastAPI
from pydantic import BaseModel

from common.types import DetectionSample, Location, TranscriptionEntry
from proc_orchestrator import Orchestrator


class AckResponse(BaseModel):
    cancelled: bool


class SessionEndResponse(BaseModel):
    ended: bool


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Control surface for the dashboard, detector and location collaborators."""

    app = FastAPI(title="Driva Orchestrator")

    @app.get("/health")
    async def health() -> Dict[str, str]:
        """Basic liveness probe."""
        return {"status": "ok"}

    @app.get("/state")
    async def state() -> Dict[str, Any]:
        return orchestrator.snapshot()

    @app.get("/transcript", response_model=List[TranscriptionEntry])
    async def transcript() -> List[TranscriptionEntry]:
        return list(orchestrator.log.entries)

    @app.post("/location")
    async def location(loc: Location) -> Dict[str, str]:
        orchestrator.location.set(loc)
        return {"status": "ok"}

    @app.post("/detection")
    async def detection(sample: DetectionSample) -> Dict[str, str]:
        """Latest landmark sample; the next detection tick consumes it."""
        orchestrator.samples.set(sample)
        return {"status": "ok"}

    @app.post("/emergency/ack", response_model=AckResponse)
    async def acknowledge() -> AckResponse:
        """The "I'm okay" button."""
        return AckResponse(cancelled=orchestrator.acknowledge())

    @app.post("/session/end", response_model=SessionEndResponse)
    async def end_session() -> SessionEndResponse:
        return SessionEndResponse(ended=orchestrator.end_conversation())

    return app
