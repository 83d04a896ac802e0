"""
Pipeline Stage Implementations

Each stage is a separate coroutine that can be called independently.
Stages return a PipelineResult or raise; they never touch session state.
"""

import io
import asyncio
from pathlib import Path
from typing import Optional, Tuple, Callable, Awaitable

import httpx
from PIL import Image

from src.core.config import settings
from src.core.logging import get_logger, with_logging
from src.core.metrics import track_stage_latency, record_stylize_call
from src.core.exceptions import BackgroundRemovalFailedError, StylizationFailedError
from src.core.storage import IStorage
from src.modules.session.models import NormalizedImage, PipelineResult, PipelineStage

logger = get_logger(__name__)

# Accepts raw image bytes, returns background-stripped image bytes
Segmenter = Callable[[bytes], Awaitable[bytes]]


class RembgSegmenter:
    """Runs rembg in a worker thread. The model session is created lazily."""

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or settings.REMBG_MODEL
        self._session = None

    def load(self):
        """Create the rembg model session (downloads weights on first use)."""
        if self._session is None:
            # Lazy import: onnxruntime startup is slow
            from rembg import new_session

            logger.info("rembg_model_loading", model=self.model_name)
            self._session = new_session(self.model_name)
        return self._session

    def _remove(self, data: bytes) -> bytes:
        from rembg import remove

        return remove(data, session=self.load())

    async def __call__(self, data: bytes) -> bytes:
        return await asyncio.to_thread(self._remove, data)


def _encode_png(data: bytes) -> Tuple[bytes, int, int]:
    """Decode segmenter output, returning PNG bytes and dimensions."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        width, height = img.size
        if img.format == "PNG":
            return data, width, height
        buffer = io.BytesIO()
        img.convert("RGBA").save(buffer, format="PNG")
        return buffer.getvalue(), width, height


# =============================================================================
# Stage 1: Background Removal (local segmentation)
# =============================================================================

@with_logging("background_removal")
async def remove_background(
    image: NormalizedImage,
    segmenter: Segmenter,
    storage: IStorage
) -> PipelineResult:
    """
    Strip the background from a normalized image.

    Args:
        image: Normalized input image
        segmenter: Local segmentation call
        storage: Where the transparent PNG is kept for preview/download

    Returns:
        PipelineResult for the background_removal stage

    Raises:
        BackgroundRemovalFailedError: If segmentation or decoding fails
    """
    logger.info("background_removal_starting", input_size=image.size)

    try:
        with track_stage_latency(PipelineStage.BACKGROUND_REMOVAL.value):
            output = await segmenter(image.data)
            png_bytes, width, height = await asyncio.to_thread(_encode_png, output)

        reference = await storage.upload(
            png_bytes,
            f"{Path(image.filename).stem}_transparent.png",
            folder="previews",
            content_type="image/png"
        )
    except Exception as e:
        raise BackgroundRemovalFailedError(f"Background removal failed: {e}")

    logger.info(
        "background_removal_completed",
        output_size=len(png_bytes),
        output_dimensions=(width, height),
        reference=reference
    )

    return PipelineResult(
        stage=PipelineStage.BACKGROUND_REMOVAL,
        reference=reference,
        data=png_bytes,
        width=width,
        height=height,
        source_id=image.id,
    )


async def load_payload(result: PipelineResult, storage: IStorage) -> bytes:
    """Bytes of a stage result, re-read from its reference if not held."""
    if result.data is not None:
        return result.data
    return await storage.download(result.reference)


# =============================================================================
# Stage 2: Stylization (Cartoonize API)
# =============================================================================

def parse_cartoon_url(response: httpx.Response) -> str:
    """
    Extract ``cartoonUrl`` from a cartoonize response.

    Raises:
        StylizationFailedError: On any body that is not an object with a
            non-empty string ``cartoonUrl``
    """
    try:
        body = response.json()
    except ValueError:
        raise StylizationFailedError(
            "Cartoonize API returned a non-JSON body",
            http_status=response.status_code
        )

    url = body.get("cartoonUrl") if isinstance(body, dict) else None
    if not isinstance(url, str) or len(url) == 0:
        raise StylizationFailedError(
            "Invalid cartoon URL received",
            http_status=response.status_code
        )
    return url


@with_logging("stylization")
async def stylize(
    payload: bytes,
    client: Optional[httpx.AsyncClient] = None,
    endpoint: Optional[str] = None,
    source_id: Optional[str] = None
) -> PipelineResult:
    """
    Send a background-removed PNG to the cartoonize API.

    Args:
        payload: PNG bytes of the background-removed image
        client: Shared HTTP client; a short-lived one is created if None
        endpoint: Full cartoonize URL (defaults to settings)
        source_id: SourceFile the payload was derived from

    Returns:
        PipelineResult whose reference is the cartoon URL

    Raises:
        StylizationFailedError: Transport error, non-2xx or malformed body
    """
    endpoint = endpoint or settings.stylize_endpoint
    files = {"image": ("image.png", payload, "image/png")}

    logger.info("stylization_starting", input_size=len(payload), endpoint=endpoint)

    try:
        with track_stage_latency(PipelineStage.STYLIZATION.value):
            if client is None:
                async with httpx.AsyncClient(timeout=settings.STYLIZE_TIMEOUT_SECONDS) as own_client:
                    response = await own_client.post(endpoint, files=files)
            else:
                response = await client.post(endpoint, files=files)
    except httpx.TimeoutException:
        record_stylize_call(status="timeout")
        raise StylizationFailedError("Cartoonize API timeout")
    except httpx.HTTPError as e:
        record_stylize_call(status="error")
        raise StylizationFailedError(f"Cartoonize API call failed: {e}")

    if not response.is_success:
        record_stylize_call(status="error", http_status=response.status_code)
        raise StylizationFailedError(
            f"Cartoonize API error: {response.text[:200]}",
            http_status=response.status_code
        )

    try:
        cartoon_url = parse_cartoon_url(response)
    except StylizationFailedError:
        record_stylize_call(status="malformed", http_status=response.status_code)
        raise

    record_stylize_call(status="success", http_status=response.status_code)
    logger.info("stylization_completed", cartoon_url=cartoon_url)

    return PipelineResult(
        stage=PipelineStage.STYLIZATION,
        reference=cartoon_url,
        source_id=source_id,
    )
