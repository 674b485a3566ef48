import os
from collections.abc import Callable
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from reader_companion.llm import LLM
from reader_companion.models import ApiConfig
from reader_companion.routes import router
from reader_companion.service import ReaderCompanion
from reader_companion.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(
    data_dir: Path | None = None,
    llm_factory: Callable[[ApiConfig], LLM] | None = None,
    scheduler_interval: float | None = None,
) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    interval = scheduler_interval or float(os.getenv("SUMMARY_TICK_SECONDS", "0.5"))
    companion = ReaderCompanion(Storage(resolved), llm_factory=llm_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # The summary scheduler runs for the lifetime of the server
        companion.start(interval)
        yield
        await companion.stop()

    app = FastAPI(title="Reader Companion", lifespan=lifespan)
    app.state.companion = companion
    app.include_router(router, prefix="/api")
    return app
