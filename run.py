from __future__ import annotations

import asyncio
import sys

import uvicorn

from apps.orchestrator.main import create_app
from audio.capture import require_microphone
from common.config import Settings
from common.errors import PermissionDenied
from common.log import emit
from proc_orchestrator import Orchestrator
import proc_ack


async def serve(settings: Settings) -> None:
    loop = asyncio.get_running_loop()
    orchestrator = Orchestrator(settings)
    app = create_app(orchestrator)
    orchestrator.start()
    listener = proc_ack.run(lambda: loop.call_soon_threadsafe(orchestrator.acknowledge))
    server = uvicorn.Server(uvicorn.Config(app, host=settings.host, port=settings.port,
                                           log_level="warning"))
    try:
        await server.serve()
    finally:
        listener.stop()
        await orchestrator.stop()


def main() -> None:
    settings = Settings.from_env()
    try:
        require_microphone()
    except PermissionDenied as exc:
        emit("permission.denied", subsystem="microphone", error=str(exc))
        sys.exit(1)
    if not settings.api_key:
        emit("config.warning", detail="no API key; companion sessions will fail to connect")
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
