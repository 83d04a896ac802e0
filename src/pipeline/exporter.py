"""
Artifact Exporter

Turns a stage result into a named PNG download:
"<kind_label>-<epoch_millis>.png".
"""

import time
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from src.core.config import settings
from src.core.logging import get_logger
from src.core.metrics import record_export
from src.core.exceptions import ExportFailedError
from src.core.storage import IStorage
from src.modules.session.models import PipelineResult

logger = get_logger(__name__)


class ExportedArtifact(BaseModel):
    """A saved download."""
    filename: str
    storage_key: str
    content_type: str = "image/png"
    data: bytes = Field(repr=False)


def export_filename(kind_label: str, epoch_millis: Optional[int] = None) -> str:
    if epoch_millis is None:
        epoch_millis = int(time.time() * 1000)
    return f"{kind_label}-{epoch_millis}.png"


def is_remote(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


class ArtifactExporter:
    """Saves stage results to storage under their download name."""

    def __init__(
        self,
        storage: IStorage,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.storage = storage
        self.client = client
        self.timeout = timeout or settings.EXPORT_FETCH_TIMEOUT_SECONDS

    async def _fetch(self, url: str) -> bytes:
        if self.client is not None:
            response = await self.client.get(url, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.content

    async def _payload(self, result: PipelineResult) -> bytes:
        if result.data is not None:
            return result.data
        if is_remote(result.reference):
            return await self._fetch(result.reference)
        return await self.storage.download(result.reference)

    async def export(
        self,
        result: Optional[PipelineResult],
        kind_label: str
    ) -> Optional[ExportedArtifact]:
        """
        Save a result as "<kind_label>-<epoch_millis>.png".

        Returns:
            The saved artifact, or None when there is no result

        Raises:
            ExportFailedError: If the payload cannot be fetched or saved
        """
        if result is None:
            return None

        filename = export_filename(kind_label)

        try:
            data = await self._payload(result)
            storage_key = await self.storage.upload(
                data,
                filename,
                folder="exports",
                content_type="image/png",
                keep_name=True
            )
        except (httpx.HTTPError, OSError) as e:
            record_export(kind=kind_label, status="error")
            logger.error("export_failed", kind=kind_label, reference=result.reference, error=str(e))
            raise ExportFailedError(f"Failed to save {filename}: {e}", kind=kind_label)

        record_export(kind=kind_label, status="success")
        logger.info("export_completed", kind=kind_label, filename=filename, size=len(data))

        return ExportedArtifact(filename=filename, storage_key=storage_key, data=data)
