"""
Pipeline State Machine

Orchestrates one session:

    idle -> removing_background -> (bg_ready | bg_failed)
         -> stylizing -> (stylized | style_failed)

reset returns to idle from any state; retry re-enters the stage named by
last_failed_stage. Stage calls cannot be aborted, so every run remembers
the SourceFile it was started for and only commits if that file is still
the current one.
"""

from typing import Optional, Coroutine, Any

import httpx

from src.core.config import settings
from src.core.logging import get_logger, LogContext
from src.core.metrics import record_stage_run, record_upload
from src.core.storage import IStorage
from src.core.exceptions import (
    UnsupportedFormatError,
    OversizeFileError,
    BackgroundRemovalFailedError,
    StylizationFailedError,
    ExportFailedError,
    PipelineBusyError,
)
from src.modules.session.models import (
    ArtifactKind,
    FailedStage,
    NotificationLevel,
    NormalizedImage,
    PipelineResult,
    PipelineStage,
    PipelineState,
    SessionState,
    SourceFile,
)
from src.pipeline import stages
from src.pipeline.intake import normalize, is_convertible
from src.pipeline.progress import ProgressEstimator
from src.pipeline.exporter import ArtifactExporter, ExportedArtifact, is_remote

logger = get_logger(__name__)


class PipelineStateMachine:
    """
    Owns a SessionState and is the only writer of its PipelineStatus.

    Mutual exclusion is a precondition, not a lock: starting a stage while
    another is running raises PipelineBusyError.
    """

    def __init__(
        self,
        state: SessionState,
        segmenter: stages.Segmenter,
        storage: IStorage,
        http_client: Optional[httpx.AsyncClient] = None,
        exporter: Optional[ArtifactExporter] = None,
        progress_interval: Optional[float] = None,
        progress_decay: Optional[float] = None,
    ):
        self.state = state
        self.segmenter = segmenter
        self.storage = storage
        self.http_client = http_client
        self.exporter = exporter or ArtifactExporter(storage, client=http_client)
        self.progress_interval = progress_interval
        self.progress_decay = progress_decay
        self._estimator: Optional[ProgressEstimator] = None

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def status(self):
        return self.state.status

    def _log_context(self, stage: Optional[str] = None) -> LogContext:
        return LogContext(session_id=self.session_id, stage=stage)

    def _is_current(self, source: Optional[SourceFile]) -> bool:
        current = self.state.source
        return source is not None and current is not None and current.id == source.id

    def _ensure_idle(self):
        if self.state.status.currently_running:
            raise PipelineBusyError(session_id=self.session_id)

    def _enter(self, state: PipelineState):
        self.state.state = state
        self.state.status.currently_running = True
        self.state.status.last_failed_stage = FailedStage.NONE

    def _fail(self, stage: FailedStage, state: PipelineState, message: str):
        self.state.status.last_failed_stage = stage
        self.state.state = state
        self.state.notify(NotificationLevel.ERROR, message)

    def _write_progress(self, source: SourceFile, percent: int):
        if self._is_current(source):
            self.state.status.progress_percent = percent

    def _cancel_progress(self):
        if self._estimator is not None:
            self._estimator.cancel()
            self._estimator = None

    def _settle_progress(self, estimator: ProgressEstimator, source: SourceFile):
        """Let the final 100% decay back to 0 unless the run was superseded."""
        if self._estimator is estimator and self._is_current(source):
            estimator.schedule_reset()

    async def _release(self, result: Optional[PipelineResult]):
        """Delete the stored preview behind a superseded result."""
        if result is None or is_remote(result.reference):
            return
        deleted = await self.storage.delete(result.reference)
        logger.debug("result_released", reference=result.reference, deleted=deleted)

    async def _clear_results(self):
        await self._release(self.state.background_removed)
        await self._release(self.state.stylized)
        self.state.background_removed = None
        self.state.stylized = None

    # =========================================================================
    # Intake
    # =========================================================================

    async def select_file(self, source: Optional[SourceFile]) -> Optional[NormalizedImage]:
        """
        Accept a new file selection.

        An empty selection is a no-op. A rejected file leaves the session
        untouched apart from an error notification.

        Raises:
            UnsupportedFormatError, OversizeFileError
        """
        if source is None:
            return None

        with self._log_context("intake"):
            converted = is_convertible(source.filename)
            try:
                image = await normalize(source)
            except (UnsupportedFormatError, OversizeFileError) as e:
                record_upload(status="rejected", converted=converted)
                logger.warning("upload_rejected", filename=source.filename, error=e.message)
                self.state.notify(NotificationLevel.ERROR, e.message)
                raise

            if image is None:
                return None

            # A run still in flight now targets a discarded file
            self._cancel_progress()
            await self._clear_results()

            self.state.source = source
            self.state.image = image
            self.state.state = PipelineState.IDLE
            self.state.status.last_failed_stage = FailedStage.NONE
            self.state.status.progress_percent = 0

            record_upload(status="accepted", converted=converted)
            logger.info(
                "upload_accepted",
                filename=image.filename,
                content_type=image.content_type,
                size=image.size,
                dimensions=(image.width, image.height)
            )
            self.state.notify(NotificationLevel.SUCCESS, "Image uploaded successfully!")
            return image

    # =========================================================================
    # Stage 1: Background Removal
    # =========================================================================

    def launch_background_removal(self) -> Optional[Coroutine[Any, Any, Optional[PipelineResult]]]:
        """
        Check preconditions and enter removing_background.

        Returns the coroutine that performs the run, or None when there is
        no image to process.

        Raises:
            PipelineBusyError: If a stage is already running
        """
        image = self.state.image
        source = self.state.source
        if image is None or source is None:
            logger.info("background_removal_skipped", reason="no_image", session_id=self.session_id)
            return None

        self._ensure_idle()
        self._cancel_progress()
        self._enter(PipelineState.REMOVING_BACKGROUND)
        self.state.status.progress_percent = 0

        return self._run_background_removal(source, image)

    async def _run_background_removal(
        self,
        source: SourceFile,
        image: NormalizedImage
    ) -> Optional[PipelineResult]:
        stage = PipelineStage.BACKGROUND_REMOVAL.value
        estimator = ProgressEstimator(
            lambda percent: self._write_progress(source, percent),
            interval=self.progress_interval,
            decay_seconds=self.progress_decay,
        )
        self._estimator = estimator

        with self._log_context(stage):
            try:
                async with estimator:
                    result = await stages.remove_background(image, self.segmenter, self.storage)
            except BackgroundRemovalFailedError as e:
                self._settle_progress(estimator, source)
                if self._is_current(source):
                    record_stage_run(stage, "failed")
                    self._fail(
                        FailedStage.BACKGROUND_REMOVAL,
                        PipelineState.BG_FAILED,
                        "Background removal failed. Try again."
                    )
                else:
                    record_stage_run(stage, "discarded")
                    logger.info("stale_failure_discarded", error=e.message)
                return None
            finally:
                self.state.status.currently_running = False

            self._settle_progress(estimator, source)
            if not self._is_current(source):
                record_stage_run(stage, "discarded")
                logger.info("stale_result_discarded", reference=result.reference)
                await self._release(result)
                return None

            await self._release(self.state.background_removed)
            self.state.background_removed = result
            self.state.state = PipelineState.BG_READY
            record_stage_run(stage, "success")
            self.state.notify(NotificationLevel.SUCCESS, "Background removed successfully!")
            return result

    async def remove_background(self) -> Optional[PipelineResult]:
        """Run background removal to completion."""
        run = self.launch_background_removal()
        if run is None:
            return None
        return await run

    # =========================================================================
    # Stage 2: Stylization
    # =========================================================================

    def launch_stylization(self) -> Optional[Coroutine[Any, Any, Optional[PipelineResult]]]:
        """
        Check preconditions and enter stylizing.

        Returns None (no-op) when there is no background-removed result.

        Raises:
            PipelineBusyError: If a stage is already running
        """
        background_removed = self.state.background_removed
        source = self.state.source
        if background_removed is None or source is None:
            logger.info("stylization_skipped", reason="no_background_removed", session_id=self.session_id)
            return None

        self._ensure_idle()
        self._enter(PipelineState.STYLIZING)

        return self._run_stylization(source, background_removed)

    async def _run_stylization(
        self,
        source: SourceFile,
        background_removed: PipelineResult
    ) -> Optional[PipelineResult]:
        stage = PipelineStage.STYLIZATION.value

        with self._log_context(stage):
            try:
                try:
                    payload = await stages.load_payload(background_removed, self.storage)
                except OSError as e:
                    raise StylizationFailedError(f"Background-removed image unavailable: {e}")
                result = await stages.stylize(
                    payload,
                    client=self.http_client,
                    endpoint=settings.stylize_endpoint,
                    source_id=source.id
                )
            except StylizationFailedError as e:
                if self._is_current(source):
                    record_stage_run(stage, "failed")
                    self._fail(
                        FailedStage.STYLIZATION,
                        PipelineState.STYLE_FAILED,
                        "Cartoon conversion failed. Try again later."
                    )
                else:
                    record_stage_run(stage, "discarded")
                    logger.info("stale_failure_discarded", error=e.message)
                return None
            finally:
                self.state.status.currently_running = False

            if not self._is_current(source):
                record_stage_run(stage, "discarded")
                logger.info("stale_result_discarded", reference=result.reference)
                return None

            self.state.stylized = result
            self.state.state = PipelineState.STYLIZED
            record_stage_run(stage, "success")
            self.state.notify(NotificationLevel.SUCCESS, "Cartoon created successfully!")
            return result

    async def stylize(self) -> Optional[PipelineResult]:
        """Run stylization to completion."""
        run = self.launch_stylization()
        if run is None:
            return None
        return await run

    # =========================================================================
    # Retry / Reset
    # =========================================================================

    def launch_retry(self) -> Optional[Coroutine[Any, Any, Optional[PipelineResult]]]:
        """Re-enter exactly the stage named by last_failed_stage."""
        failed = self.state.status.last_failed_stage
        logger.info("retry_requested", failed_stage=failed.value, session_id=self.session_id)

        if failed == FailedStage.BACKGROUND_REMOVAL:
            return self.launch_background_removal()
        if failed == FailedStage.STYLIZATION:
            return self.launch_stylization()
        return None

    async def retry(self) -> Optional[PipelineResult]:
        run = self.launch_retry()
        if run is None:
            return None
        return await run

    async def reset(self):
        """
        Clear the session unconditionally.

        An in-flight stage keeps running; its result is discarded when it
        resolves because its SourceFile is gone.
        """
        with self._log_context():
            self._cancel_progress()
            await self._clear_results()

            self.state.source = None
            self.state.image = None
            self.state.state = PipelineState.IDLE
            self.state.status.last_failed_stage = FailedStage.NONE
            self.state.status.progress_percent = 0

            logger.info("session_reset", in_flight=self.state.status.currently_running)
            self.state.notify(NotificationLevel.INFO, "Reset complete!")

    # =========================================================================
    # Export
    # =========================================================================

    def result_for(self, kind: ArtifactKind) -> Optional[PipelineResult]:
        if kind == ArtifactKind.BG_REMOVED:
            return self.state.background_removed
        return self.state.stylized

    async def export(self, kind: ArtifactKind) -> Optional[ExportedArtifact]:
        """
        Save the result for ``kind`` as a download. No-op without a result.

        Raises:
            ExportFailedError: Reported to the client; pipeline state is kept
        """
        with self._log_context("export"):
            try:
                artifact = await self.exporter.export(self.result_for(kind), kind.value)
            except ExportFailedError:
                self.state.notify(NotificationLevel.ERROR, "Download failed. Try again.")
                raise

            if artifact is None:
                return None

            self.state.notify(NotificationLevel.SUCCESS, f"{kind.value.capitalize()} downloaded!")
            return artifact
