"""Test doubles and image builders shared by unit and e2e tests."""

import io
import json
import asyncio
from typing import List, Optional, Tuple

import httpx
from PIL import Image

from src.modules.session.models import SessionState, SourceFile
from src.pipeline.state_machine import PipelineStateMachine

STYLIZE_URL = "http://localhost:5000/api/cartoonize"


def make_image_bytes(
    size: Tuple[int, int] = (64, 48),
    fmt: str = "PNG",
    mode: str = "RGB",
    color=(200, 120, 40),
) -> bytes:
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_source(
    filename: str = "photo.png",
    content_type: str = "image/png",
    data: Optional[bytes] = None,
) -> SourceFile:
    return SourceFile(
        filename=filename,
        content_type=content_type,
        data=data if data is not None else make_image_bytes(),
    )


class FakeSegmenter:
    """Stands in for rembg: returns a transparent PNG, optionally gated."""

    def __init__(self, output_size: Tuple[int, int] = (64, 48)):
        self.output_size = output_size
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[bytes] = []

    async def __call__(self, data: bytes) -> bytes:
        self.calls.append(data)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("segmentation model crashed")
        return make_image_bytes(self.output_size, mode="RGBA", color=(10, 20, 30, 0))


class CartoonAPI:
    """Scripted cartoonize endpoint for httpx.MockTransport."""

    def __init__(self):
        self.responses: List[httpx.Response] = []
        self.requests: List[httpx.Request] = []
        self.gate: Optional[asyncio.Event] = None
        self.download_fails = False

    def respond_json(self, body, status_code: int = 200):
        self.responses.append(
            httpx.Response(
                status_code,
                content=json.dumps(body).encode(),
                headers={"Content-Type": "application/json"},
            )
        )

    def respond(self, response: httpx.Response):
        self.responses.append(response)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if request.method == "GET":
            # Remote cartoon download
            if self.download_fails:
                raise httpx.ConnectError("cartoon host unreachable", request=request)
            return httpx.Response(
                200,
                content=make_image_bytes((32, 32)),
                headers={"Content-Type": "image/png"},
            )
        if not self.responses:
            raise httpx.ConnectError("cartoonize API unreachable", request=request)
        return self.responses.pop(0)


def build_machine(state: SessionState, segmenter, storage, http_client) -> PipelineStateMachine:
    return PipelineStateMachine(
        state,
        segmenter=segmenter,
        storage=storage,
        http_client=http_client,
        progress_interval=0.002,
        progress_decay=0.05,
    )
