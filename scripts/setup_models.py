#!/usr/bin/env python3
"""
Model Setup Script - Pre-download the Background Removal Model

This script:
1. Downloads the rembg segmentation model weights
2. Validates the model on a small generated image
3. Reports loading times

Run this during Docker build to avoid download at runtime:
    python scripts/setup_models.py

Environment variables:
    REMBG_MODEL: Model to download (default: u2net)
    U2NET_HOME: Where rembg stores weights (default: ~/.u2net)
"""

import io
import sys
import time
import asyncio
import logging
import argparse
from pathlib import Path

from PIL import Image

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import settings
from src.pipeline.stages import RembgSegmenter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _sample_image() -> bytes:
    """A 64x64 red square on white, as PNG."""
    image = Image.new("RGB", (64, 64), (255, 255, 255))
    image.paste((220, 30, 30), (16, 16, 48, 48))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def setup_models(model_name: str, validate: bool = True) -> bool:
    """Download and optionally validate the segmentation model.

    Args:
        model_name: rembg model name (u2net, u2netp, isnet-general-use, ...)
        validate: Run one segmentation after download
    """
    logger.info("=" * 60)
    logger.info("Background Removal Model Setup")
    logger.info("=" * 60)
    logger.info(f"Model: {model_name}")

    segmenter = RembgSegmenter(model_name)

    start = time.time()
    try:
        segmenter.load()
    except Exception as e:
        logger.error(f"Model download failed: {e}")
        return False
    logger.info(f"Model ready in {time.time() - start:.1f}s")

    if not validate:
        return True

    start = time.time()
    try:
        output = asyncio.run(segmenter(_sample_image()))
        with Image.open(io.BytesIO(output)) as result:
            logger.info(f"Validation output: {result.size[0]}x{result.size[1]} {result.mode}")
    except Exception as e:
        logger.error(f"Validation failed: {e}")
        return False
    logger.info(f"Validation passed in {time.time() - start:.2f}s")

    return True


def main() -> int:
    parser = argparse.ArgumentParser(description="Pre-download the rembg model")
    parser.add_argument(
        "--model",
        default=settings.REMBG_MODEL,
        help=f"rembg model name (default: {settings.REMBG_MODEL})"
    )
    parser.add_argument(
        "--no-validate",
        action="store_true",
        help="Skip the validation run"
    )
    args = parser.parse_args()

    ok = setup_models(args.model, validate=not args.no_validate)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
