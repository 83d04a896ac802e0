"""
Session Endpoints - Upload, Pipeline Control and Downloads

POST   /api/v1/sessions                        - Create a session
GET    /api/v1/sessions/{id}                   - Status snapshot (poll for progress)
DELETE /api/v1/sessions/{id}                   - Discard a session
POST   /api/v1/sessions/{id}/upload            - Select a file
POST   /api/v1/sessions/{id}/remove-background - Start background removal
POST   /api/v1/sessions/{id}/cartoonize        - Start stylization
POST   /api/v1/sessions/{id}/retry             - Retry the failed stage
POST   /api/v1/sessions/{id}/reset             - Reset the session
GET    /api/v1/sessions/{id}/notifications     - Drain toast notifications
GET    /api/v1/sessions/{id}/download/{kind}   - Download a result
"""

from typing import Optional, List
from datetime import datetime

from fastapi import APIRouter, Depends, UploadFile, File, Response
from pydantic import BaseModel

from src.core.logging import get_logger
from src.core.storage import IStorage, get_storage
from src.api.dependencies import get_machine, get_registry
from src.modules.session.models import (
    ArtifactKind,
    FailedStage,
    Notification,
    PipelineResult,
    SourceFile,
)
from src.modules.session.registry import SessionRegistry
from src.pipeline.exporter import is_remote
from src.pipeline.state_machine import PipelineStateMachine

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class ImageInfo(BaseModel):
    """Normalized upload."""
    filename: str
    content_type: str
    size_bytes: int
    width: int
    height: int


class ResultInfo(BaseModel):
    """A stage result as shown to the client."""
    stage: str
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: datetime


class StatusInfo(BaseModel):
    currently_running: bool
    last_failed_stage: FailedStage
    progress_percent: int


class SessionResponse(BaseModel):
    """Full session snapshot."""
    session_id: str
    state: str
    status: StatusInfo
    image: Optional[ImageInfo] = None
    background_removed: Optional[ResultInfo] = None
    stylized: Optional[ResultInfo] = None
    can_remove_background: bool
    can_cartoonize: bool
    can_retry: bool


class LaunchResponse(BaseModel):
    """Answer to a stage request."""
    accepted: bool
    message: str
    session: SessionResponse


class NotificationsResponse(BaseModel):
    notifications: List[Notification]


# =============================================================================
# Helpers
# =============================================================================

async def _result_info(result: Optional[PipelineResult], storage: IStorage) -> Optional[ResultInfo]:
    if result is None:
        return None
    url = result.reference
    if not is_remote(url):
        try:
            url = await storage.get_url(result.reference)
        except FileNotFoundError:
            logger.warning("result_reference_missing", reference=result.reference)
    return ResultInfo(
        stage=result.stage.value,
        url=url,
        width=result.width,
        height=result.height,
        created_at=result.created_at
    )


async def build_snapshot(machine: PipelineStateMachine, storage: IStorage) -> SessionResponse:
    state = machine.state
    status = state.status
    image = None
    if state.image is not None:
        image = ImageInfo(
            filename=state.image.filename,
            content_type=state.image.content_type,
            size_bytes=state.image.size,
            width=state.image.width,
            height=state.image.height
        )

    idle = not status.currently_running
    return SessionResponse(
        session_id=state.session_id,
        state=state.state.value,
        status=StatusInfo(
            currently_running=status.currently_running,
            last_failed_stage=status.last_failed_stage,
            progress_percent=status.progress_percent
        ),
        image=image,
        background_removed=await _result_info(state.background_removed, storage),
        stylized=await _result_info(state.stylized, storage),
        can_remove_background=idle and state.image is not None,
        can_cartoonize=idle and state.background_removed is not None,
        can_retry=idle and status.last_failed_stage != FailedStage.NONE,
    )


async def _launch(
    run,
    name: str,
    machine: PipelineStateMachine,
    registry: SessionRegistry,
    storage: IStorage,
    response: Response
) -> LaunchResponse:
    if run is None:
        return LaunchResponse(
            accepted=False,
            message=f"Nothing to do for {name}",
            session=await build_snapshot(machine, storage)
        )

    registry.spawn(machine.session_id, run, name=f"{name}:{machine.session_id}")
    response.status_code = 202
    logger.info("stage_dispatched", stage=name)
    return LaunchResponse(
        accepted=True,
        message=f"{name} started",
        session=await build_snapshot(machine, storage)
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    registry: SessionRegistry = Depends(get_registry),
    storage: IStorage = Depends(get_storage)
):
    """Create a new, idle session."""
    machine = registry.create()
    return await build_snapshot(machine, storage)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    machine: PipelineStateMachine = Depends(get_machine),
    storage: IStorage = Depends(get_storage)
):
    """
    Get the current session snapshot.

    Poll this while a stage runs: ``status.progress_percent`` climbs to 90
    during background removal, hits 100 when the call resolves, then drops
    back to 0.
    """
    return await build_snapshot(machine, storage)


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry)
):
    """Discard a session and its stored previews."""
    await registry.discard(session_id)
    return Response(status_code=204)


@router.post("/{session_id}/upload", response_model=SessionResponse)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    machine: PipelineStateMachine = Depends(get_machine),
    storage: IStorage = Depends(get_storage)
):
    """
    Select a file for the session.

    Accepts any image/* type plus .heic/.heif (converted to JPEG).
    Files over 10 MB after conversion are rejected with 413, non-images
    with 415. Sending no file is a no-op.
    """
    if file is not None:
        data = await file.read()
        source = SourceFile(
            filename=file.filename or "",
            content_type=file.content_type or "",
            data=data
        )
        logger.info("upload_received", filename=source.filename, size=source.size)
        await machine.select_file(source)

    return await build_snapshot(machine, storage)


@router.post("/{session_id}/remove-background", response_model=LaunchResponse)
async def remove_background(
    response: Response,
    machine: PipelineStateMachine = Depends(get_machine),
    registry: SessionRegistry = Depends(get_registry),
    storage: IStorage = Depends(get_storage)
):
    """Start background removal (202). 409 while another stage runs."""
    run = machine.launch_background_removal()
    return await _launch(run, "background_removal", machine, registry, storage, response)


@router.post("/{session_id}/cartoonize", response_model=LaunchResponse)
async def cartoonize(
    response: Response,
    machine: PipelineStateMachine = Depends(get_machine),
    registry: SessionRegistry = Depends(get_registry),
    storage: IStorage = Depends(get_storage)
):
    """Start stylization of the background-removed image (202)."""
    run = machine.launch_stylization()
    return await _launch(run, "stylization", machine, registry, storage, response)


@router.post("/{session_id}/retry", response_model=LaunchResponse)
async def retry(
    response: Response,
    machine: PipelineStateMachine = Depends(get_machine),
    registry: SessionRegistry = Depends(get_registry),
    storage: IStorage = Depends(get_storage)
):
    """Re-run exactly the stage that last failed (202)."""
    run = machine.launch_retry()
    return await _launch(run, "retry", machine, registry, storage, response)


@router.post("/{session_id}/reset", response_model=SessionResponse)
async def reset(
    machine: PipelineStateMachine = Depends(get_machine),
    storage: IStorage = Depends(get_storage)
):
    """Clear the file, results and failure state. Works mid-operation."""
    await machine.reset()
    return await build_snapshot(machine, storage)


@router.get("/{session_id}/notifications", response_model=NotificationsResponse)
async def drain_notifications(machine: PipelineStateMachine = Depends(get_machine)):
    """Return and clear pending notifications."""
    return NotificationsResponse(notifications=machine.state.drain_notifications())


@router.get("/{session_id}/download/{kind}")
async def download(
    kind: ArtifactKind,
    machine: PipelineStateMachine = Depends(get_machine)
):
    """
    Download a result as ``{kind}-{epochMillis}.png``.

    204 when the result does not exist yet; 502 if a remote cartoon
    cannot be fetched.
    """
    artifact = await machine.export(kind)
    if artifact is None:
        return Response(status_code=204)

    return Response(
        content=artifact.data,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    )
