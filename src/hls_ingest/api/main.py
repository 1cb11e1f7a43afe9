from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, File, Form, Header, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from hls_ingest.config import configure_logging, resolve_config
from hls_ingest.errors import InvalidStateTransition, NotFound, PipelineError, TransientStorageError
from hls_ingest.queue.models import TERMINAL_STATES
from hls_ingest.service import IngestService
from hls_ingest.storage import TENANT_PATTERN

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    TransientStorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# --- Pydantic Models for Requests/Responses ---
class VideoCreate(BaseModel):
    tenant: str = Field(..., pattern=TENANT_PATTERN)
    source_location: str = Field(..., min_length=1, description="Object key or file:// URI")
    filename: str = Field(..., min_length=1)
    actor_id: Optional[str] = None
    replaces_video_id: Optional[str] = None
    size: int = Field(default=0, ge=0)


class VideoCreated(BaseModel):
    id: str
    processing_state: str
    queue_position: Optional[int]


def _status_payload(service: IngestService, video_id: str) -> dict:
    return service.get_processing_status(video_id).model_dump(mode="json")


def create_app(service: Optional[IngestService] = None, start_background: bool = True) -> FastAPI:
    """Build the API around one IngestService.

    With start_background, the lifespan runs crash recovery and starts the
    purge scheduler and the transcode worker; shutdown stops them.
    """
    if service is None:
        config = resolve_config()
        configure_logging(config)
        service = IngestService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background:
            await asyncio.to_thread(service.start)
        yield
        if start_background:
            await asyncio.to_thread(service.stop)

    app = FastAPI(title="hls-ingest", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        code = next(
            (c for cls, c in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        return JSONResponse(
            status_code=code, content={"detail": {"code": exc.code, "message": str(exc)}}
        )

    # --- API ENDPOINTS ---

    @app.get("/")
    async def root():
        return {"message": "HLS ingest API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    def health_check():
        return {"status": "ok", "background": service.running, "queue": service.queue_stats()}

    @app.get("/queue")
    def queue_stats():
        return service.queue_stats()

    # --- UPLOAD ENDPOINTS ---

    @app.post("/videos", status_code=201, response_model=VideoCreated)
    def enqueue_video(data: VideoCreate):
        """Register an already-stored source and queue it."""
        video_id = service.enqueue_upload(
            tenant=data.tenant,
            source_location=data.source_location,
            filename=data.filename,
            actor_id=data.actor_id,
            replaces_video_id=data.replaces_video_id,
            size=data.size,
        )
        st = service.get_processing_status(video_id)
        return VideoCreated(
            id=video_id, processing_state=st.processing_state, queue_position=st.queue_position
        )

    @app.post("/upload", status_code=201, response_model=VideoCreated)
    async def upload_video(
        file: UploadFile = File(...),
        tenant: str = Form(..., pattern=TENANT_PATTERN),
        actor_id: Optional[str] = Form(None),
        replaces_video_id: Optional[str] = Form(None),
    ):
        """Multipart upload: the body goes to the temp upload area, then the queue."""
        size = file.size or 0
        video_id = await asyncio.to_thread(
            service.upload_stream,
            tenant,
            file.file,
            file.filename or "upload.mp4",
            actor_id,
            replaces_video_id,
            size,
        )
        st = service.get_processing_status(video_id)
        return VideoCreated(
            id=video_id, processing_state=st.processing_state, queue_position=st.queue_position
        )

    # --- VIDEO ENDPOINTS ---

    @app.get("/videos/{video_id}")
    def get_video(video_id: str):
        return service.get_video(video_id).model_dump(mode="json")

    @app.get("/videos/{video_id}/processing")
    def get_processing_status(video_id: str):
        return _status_payload(service, video_id)

    @app.get("/videos/{video_id}/history")
    def get_history(video_id: str):
        return [t.model_dump(mode="json") for t in service.history(video_id)]

    @app.post("/videos/{video_id}/retry")
    def retry_video(video_id: str):
        return service.retry(video_id).model_dump(mode="json")

    @app.delete("/videos/{video_id}")
    def delete_video(video_id: str, x_actor_id: Optional[str] = Header(default=None)):
        backup = service.soft_delete(video_id, x_actor_id)
        return {"status": "deleted", "id": video_id, "purge_at": backup.purge_at.isoformat()}

    @app.post("/videos/{video_id}/restore")
    def restore_video(video_id: str):
        return service.restore(video_id).model_dump(mode="json")

    @app.get("/versions/{group_id}")
    def list_versions(group_id: str, tenant: Optional[str] = None):
        return [v.model_dump(mode="json") for v in service.list_versions(group_id, tenant)]

    @app.get("/tenants/{tenant}/videos")
    def list_videos(tenant: str):
        return [v.model_dump(mode="json") for v in service.list_videos(tenant)]

    @app.get("/tenants/{tenant}/deleted")
    def list_deleted(tenant: str):
        return [b.model_dump(mode="json") for b in service.list_deleted(tenant)]

    # --- PROGRESS EVENTS ---

    async def event_generator(video_id: str, request: Request) -> AsyncGenerator[str, None]:
        """SSE generator that yields processing status updates."""
        last = None

        while True:
            if await request.is_disconnected():
                break

            try:
                payload = await asyncio.to_thread(_status_payload, service, video_id)
            except NotFound:
                yield f"event: error\ndata: {json.dumps({'code': NotFound.code})}\n\n"
                break

            key = (payload["processing_state"], payload["progress_percent"],
                   payload["queue_position"])
            if key != last:
                yield f"data: {json.dumps(payload)}\n\n"
                last = key

            if payload["processing_state"] in TERMINAL_STATES:
                break

            await asyncio.sleep(0.5)

    @app.get("/videos/{video_id}/events")
    def video_events(video_id: str, request: Request):
        service.get_video(video_id)  # 404 before opening the stream
        return StreamingResponse(event_generator(video_id, request), media_type="text/event-stream")

    return app
