"""FastAPI application for the creative production orchestrator.

This is the web service entry point. The lifespan builds one
ProductionOrchestrator backed by the Gemini client, starts its admission
pump, and shuts every timer down when the service stops.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from adstudio.clients.gemini import GeminiClient
from adstudio.config import load_settings
from adstudio.routes import jobs
from adstudio.services.credentials import CredentialProvider
from adstudio.services.orchestrator import ProductionOrchestrator
from adstudio.utils.logging import configure_logging

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of the orchestrator.

    Startup:
    - Configure structlog
    - Build the orchestrator (unless a test already put one on app.state)
    - Start the admission pump

    Shutdown:
    - Cancel admission, start tasks and poll timers
    """
    configure_logging()
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        settings = load_settings()
        client = GeminiClient(settings)
        orchestrator = ProductionOrchestrator(client, brief_writer=client, settings=settings)
        app.state.orchestrator = orchestrator

    if not CredentialProvider().is_available():
        log.warning("api_key_missing", message="GEMINI_API_KEY not set, jobs will fail to start")

    await orchestrator.start()

    yield  # Application runs here

    await orchestrator.shutdown()


app = FastAPI(
    title="AdStudio - Creative Production Orchestrator",
    description="Queue, render and track AI-generated product commercials",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(jobs.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Health check endpoint for deployment validation.

    Returns:
        JSONResponse: Status, credential presence and queue size
    """
    orchestrator = getattr(app.state, "orchestrator", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "adstudio",
            "credential_configured": CredentialProvider().is_available(),
            "jobs": len(orchestrator.store) if orchestrator is not None else 0,
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container compatibility
    uvicorn.run(
        "adstudio.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
