"""Web server module for anisphere."""

from contextlib import asynccontextmanager
from typing import Any, Literal

import msgspec
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from . import __version__, config, logger
from .core import IngestOutcome, Pipeline
from .db import InvalidTransitionError, TaskNotFoundError
from .errors import ConflictError, InvalidStateError, NotFoundError
from .infohash import InvalidLinkError
from .result import Result
from .transcoder import UnsupportedFormatError


class ApiResponse(BaseModel):
    """API response model."""

    status: str
    message: str
    data: dict[str, Any] | None = None


class SubmitRequest(BaseModel):
    link: str
    download: bool = False


class TranscodeRequest(BaseModel):
    id: int


# Security
security = HTTPBearer(auto_error=False)


def verify_api_key(request: Request, credentials: HTTPAuthorizationCredentials | None = Depends(security)):
    """Verify API key."""
    api_key = request.app.state.api_key
    if not api_key:
        # No API key configured, allow all requests
        return True

    if credentials is None or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")

    return True


def _status_code_for(error: Exception) -> int:
    if isinstance(error, (NotFoundError, TaskNotFoundError)):
        return 404
    if isinstance(error, (ConflictError, InvalidTransitionError)):
        return 409
    if isinstance(error, (InvalidStateError, InvalidLinkError, UnsupportedFormatError)):
        return 400
    return 500


def unwrap_or_raise(result: Result, action: str) -> Any:
    """Return the result value or raise the matching HTTPException."""
    if result.ok:
        return result.value

    status_code = _status_code_for(result.error)
    if status_code == 500:
        logger.error(f"Error while trying to {action}: {result.error}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {result.error}")
    raise HTTPException(status_code=status_code, detail=str(result.error))


def create_app(pipeline: Pipeline, api_key: str | None = None) -> FastAPI:
    """Build the FastAPI app around a pipeline.

    The pipeline's monitor and engine are started and stopped with the app's lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(
        title="Anisphere Web Server",
        description="Torrent acquisition to HLS transcoding pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.api_key = api_key
    app.state.pipeline = pipeline

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        logger.debug(f"Incoming request: {request.method} {request.url}")
        response = await call_next(request)
        logger.debug(f"Response: {response.status_code}")
        return response

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Anisphere Web Server",
            "version": __version__,
            "endpoints": {
                "webhook": "/api/webhook",
                "tasks": "/api/tasks",
                "torrents": "/api/torrents",
                "docs": "/docs",
            },
        }

    @app.post("/api/webhook", response_model=ApiResponse)
    async def webhook(
        hash: str = Query(..., description="Torrent infohash"),
        tag: str | None = Query(None, description="Torrent tags reported by qBittorrent"),
        _: bool = Depends(verify_api_key),
    ):
        """qBittorrent "run on completion" hook: ``curl -X POST ".../api/webhook?hash=%I&tag=%G"``."""
        if not hash or not hash.strip():
            raise HTTPException(status_code=400, detail="hash cannot be empty")

        outcome = unwrap_or_raise(await pipeline.ingestor.handle(hash, tag), f"ingest torrent {hash}")
        return ApiResponse(
            status="success",
            message=outcome.message,
            data={"outcome": outcome.outcome, "task_ids": outcome.task_ids}
            if outcome.outcome is not IngestOutcome.SKIPPED
            else None,
        )

    @app.post("/api/tasks", response_model=ApiResponse)
    async def submit_task(body: SubmitRequest, _: bool = Depends(verify_api_key)):
        task = unwrap_or_raise(await pipeline.submit(body.link), "submit link")
        if body.download:
            task = unwrap_or_raise(await pipeline.start_download(task.id), f"start download for task {task.id}")
        return ApiResponse(status="success", message="Task created", data=msgspec.to_builtins(task))

    @app.get("/api/tasks/{task_id}", response_model=ApiResponse)
    async def get_task(task_id: int, _: bool = Depends(verify_api_key)):
        task = unwrap_or_raise(await pipeline.get_task(task_id), f"load task {task_id}")
        data = msgspec.to_builtins(task)
        data["engine_status"] = pipeline.engine.status(task_id)
        return ApiResponse(status="success", message="Task found", data=data)

    @app.post("/api/tasks/{task_id}/download", response_model=ApiResponse)
    async def start_download(task_id: int, _: bool = Depends(verify_api_key)):
        task = unwrap_or_raise(await pipeline.start_download(task_id), f"start download for task {task_id}")
        return ApiResponse(status="success", message="Download started", data=msgspec.to_builtins(task))

    @app.post("/api/tasks/{task_id}/retry", response_model=ApiResponse)
    async def retry_task(task_id: int, _: bool = Depends(verify_api_key)):
        job = unwrap_or_raise(await pipeline.retry(task_id), f"retry task {task_id}")
        return ApiResponse(status="success", message="Transcode re-queued", data=msgspec.to_builtins(job))

    @app.post("/api/tasks/{task_id}/complete", response_model=ApiResponse)
    async def complete_task(task_id: int, _: bool = Depends(verify_api_key)):
        task = unwrap_or_raise(await pipeline.complete(task_id), f"complete task {task_id}")
        return ApiResponse(status="success", message="Task completed", data=msgspec.to_builtins(task))

    @app.post("/api/transcodes", response_model=ApiResponse)
    async def start_transcode(body: TranscodeRequest, _: bool = Depends(verify_api_key)):
        job = unwrap_or_raise(await pipeline.transcode(body.id), f"transcode task {body.id}")
        return ApiResponse(status="success", message="Transcode queued", data=msgspec.to_builtins(job))

    @app.delete("/api/transcodes/{task_id}", response_model=ApiResponse)
    async def cancel_transcode(task_id: int, _: bool = Depends(verify_api_key)):
        stage = unwrap_or_raise(await pipeline.cancel(task_id), f"cancel transcode for task {task_id}")
        return ApiResponse(status="success", message=f"Cancelled {stage} transcode", data={"id": task_id})

    @app.get("/api/torrents", response_model=ApiResponse)
    async def list_torrents(
        page: int = Query(1, ge=1),
        page_size: int = Query(20, ge=1, le=200),
        status: str | None = Query(None, description="qBittorrent state filter, e.g. downloading or completed"),
        sort: str | None = Query(None, description="Torrent property to sort by, e.g. added_on"),
        order: Literal["asc", "desc"] = Query("asc"),
        _: bool = Depends(verify_api_key),
    ):
        listing = unwrap_or_raise(
            await pipeline.client.list_torrents(
                state_filter=status,
                sort=sort,
                reverse=order == "desc",
                limit=page_size,
                offset=(page - 1) * page_size,
            ),
            "list torrents",
        )
        items = [
            {
                "hash": item.hash,
                "name": item.name,
                "status": item.state,
                "progress": item.progress,
                "size": item.size,
                "added_on": item.added_on,
            }
            for item in listing.items
        ]
        return ApiResponse(status="success", message="Torrents listed", data={"items": items, "total": listing.total})

    @app.post("/api/torrents/{torrent_hash}/pause", response_model=ApiResponse)
    async def pause_torrent(torrent_hash: str, _: bool = Depends(verify_api_key)):
        unwrap_or_raise(await pipeline.client.pause(torrent_hash), f"pause torrent {torrent_hash}")
        return ApiResponse(status="success", message="Torrent paused", data={"hash": torrent_hash})

    @app.post("/api/torrents/{torrent_hash}/resume", response_model=ApiResponse)
    async def resume_torrent(torrent_hash: str, _: bool = Depends(verify_api_key)):
        unwrap_or_raise(await pipeline.client.resume(torrent_hash), f"resume torrent {torrent_hash}")
        return ApiResponse(status="success", message="Torrent resumed", data={"hash": torrent_hash})

    @app.delete("/api/torrents/{torrent_hash}", response_model=ApiResponse)
    async def delete_torrent(
        torrent_hash: str,
        delete_files: bool = Query(False),
        _: bool = Depends(verify_api_key),
    ):
        unwrap_or_raise(await pipeline.client.delete(torrent_hash, delete_files), f"delete torrent {torrent_hash}")
        return ApiResponse(status="success", message="Torrent deleted", data={"hash": torrent_hash})

    return app


def run_webserver(host: str | None = None, port: int | None = None, log_level: str = "info"):
    """Run the web server.

    Args:
        host: Server host (if None, use config value)
        port: Server port (if None, use config value)
        log_level: Log level
    """
    import uvicorn

    if host is None:
        host = config.cfg.server.host
    if port is None:
        port = config.cfg.server.port

    display_host = host if host is not None else "all interfaces (IPv4/IPv6)"
    logger.info(f"Starting Anisphere web server on {display_host}:{port}")
    logger.info(f"Using torrent client: {config.cfg.downloader.client}")

    api_key = config.cfg.server.api_key
    if api_key:
        logger.info("API key authentication enabled")
    else:
        logger.info("API key authentication disabled")

    app = create_app(Pipeline(config.cfg), api_key=api_key)
    uvicorn.run(app, host=host, port=port, log_level=log_level)
