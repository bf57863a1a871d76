from __future__ import annotations

from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session
import logging
from logging.handlers import RotatingFileHandler

from chunkscribe.config import Settings
from chunkscribe.models.base import engine, init_db
from chunkscribe.api.devices import router as devices_router
from chunkscribe.api.recording import router as recording_router
from chunkscribe.api.sessions import router as sessions_router
from chunkscribe.api.settings import router as settings_router
from chunkscribe.services.audio_capture import CaptureConfig, MicrophoneSource
from chunkscribe.services.events import ChangeHub
from chunkscribe.services.inference import GeminiInferenceService, InferenceService
from chunkscribe.services.recording_service import RecordingService, SourceFactory
from chunkscribe.services.session_files import SessionFiles
from chunkscribe.services.summarization_service import SummaryPipeline
from chunkscribe.services.transcription_service import TranscriptionPipeline


logger = logging.getLogger("chunkscribe")


def _configure_logging(settings: Settings) -> None:
    # Minimal structured logging to local file
    try:
        log_file = settings.logs_dir / "backend.log"
        handler = RotatingFileHandler(str(log_file), maxBytes=5_000_000, backupCount=2)
        formatter = logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s %(message)s")
        handler.setFormatter(formatter)
        root = logging.getLogger()
        if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
            root.addHandler(handler)
        root.setLevel(logging.INFO)
    except OSError:
        logger.warning("File logging unavailable", exc_info=True)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    inference: Optional[InferenceService] = None,
    source_factory: SourceFactory = MicrophoneSource,
) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(title="ChunkScribe Backend", version="0.1.0")

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    use_default_db = session_factory is None
    # Rows outlive their session in background tasks, so keep them loaded after commit
    factory = session_factory or (lambda: Session(engine, expire_on_commit=False))
    events = ChangeHub()
    inference = inference or GeminiInferenceService.from_settings(settings)
    files = SessionFiles.from_settings(settings)
    transcription = TranscriptionPipeline(inference, factory, events=events)

    app.state.settings = settings
    app.state.session_factory = factory
    app.state.events = events
    app.state.transcription = transcription
    app.state.summaries = SummaryPipeline(inference, factory, events=events)
    app.state.recording = RecordingService(
        factory,
        files,
        transcription,
        config=CaptureConfig.from_settings(settings),
        events=events,
        source_factory=source_factory,
    )

    @app.on_event("startup")
    async def _startup() -> None:
        settings.ensure_dirs()
        _configure_logging(settings)
        if use_default_db:
            init_db()
        await transcription.recover_pending()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        recording: RecordingService = app.state.recording
        if recording.is_capturing:
            logger.info("Stopping active capture on shutdown")
            await recording.stop_capture()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(recording_router)
    app.include_router(sessions_router)
    app.include_router(devices_router)
    app.include_router(settings_router)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logging.getLogger("chunkscribe").exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    return app


app = create_app()


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="ChunkScribe Backend Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    args = parser.parse_args()

    uvicorn.run(
        "chunkscribe.main:app" if args.reload else app,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
