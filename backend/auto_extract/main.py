"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auto_extract.config import get_settings
from auto_extract.routers import extraction
from auto_extract.runtime.local_server import LlamaServerRuntime, LocalRuntimeConfig
from auto_extract.services.lanes import LaneOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    runtime = LlamaServerRuntime(LocalRuntimeConfig.from_settings(settings))
    app.state.runtime = runtime
    app.state.orchestrator = LaneOrchestrator(runtime, settings)
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("auto_extract.shutdown runtime_stopped=true")


app = FastAPI(title=get_settings().app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(extraction.router, tags=["extraction"])


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
