import re
import asyncio

import pytest

from tests.helpers import make_image_bytes

MiB = 1024 * 1024
SESSIONS = "/api/v1/sessions"


async def create_session(client) -> str:
    response = await client.post(SESSIONS)
    assert response.status_code == 201
    return response.json()["session_id"]


async def upload_png(client, session_id: str, data: bytes = None, filename: str = "photo.png"):
    data = data if data is not None else make_image_bytes()
    return await client.post(
        f"{SESSIONS}/{session_id}/upload",
        files={"file": (filename, data, "image/png")}
    )


async def wait_until_idle(client, session_id: str) -> dict:
    for _ in range(200):
        body = (await client.get(f"{SESSIONS}/{session_id}")).json()
        if not body["status"]["currently_running"]:
            return body
        await asyncio.sleep(0.01)
    raise AssertionError("stage never finished")


async def drain(client, session_id: str):
    response = await client.get(f"{SESSIONS}/{session_id}/notifications")
    return [n["message"] for n in response.json()["notifications"]]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "pipeline_stage_runs_total" in response.text


@pytest.mark.asyncio
async def test_new_session_is_idle(client):
    response = await client.post(SESSIONS)

    data = response.json()
    assert data["state"] == "idle"
    assert data["status"] == {
        "currently_running": False,
        "last_failed_stage": "none",
        "progress_percent": 0
    }
    assert data["image"] is None
    assert data["can_remove_background"] is False


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    response = await client.get(f"{SESSIONS}/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error_type"] == "SessionNotFoundError"


@pytest.mark.asyncio
async def test_full_pipeline(client, cartoon_api):
    session_id = await create_session(client)

    response = await upload_png(client, session_id)
    assert response.status_code == 200
    assert response.json()["image"]["width"] == 64
    assert response.json()["can_remove_background"] is True

    response = await client.post(f"{SESSIONS}/{session_id}/remove-background")
    assert response.status_code == 202
    assert response.json()["accepted"] is True

    body = await wait_until_idle(client, session_id)
    assert body["state"] == "bg_ready"
    assert body["background_removed"]["width"] == 64
    assert body["can_cartoonize"] is True

    cartoon_api.respond_json({"cartoonUrl": "https://x/y.png"})
    response = await client.post(f"{SESSIONS}/{session_id}/cartoonize")
    assert response.status_code == 202

    body = await wait_until_idle(client, session_id)
    assert body["state"] == "stylized"
    assert body["stylized"]["url"] == "https://x/y.png"

    assert await drain(client, session_id) == [
        "Image uploaded successfully!",
        "Background removed successfully!",
        "Cartoon created successfully!",
    ]
    assert await drain(client, session_id) == []


@pytest.mark.asyncio
async def test_upload_without_file_is_noop(client):
    session_id = await create_session(client)

    response = await client.post(f"{SESSIONS}/{session_id}/upload")

    assert response.status_code == 200
    assert response.json()["image"] is None


@pytest.mark.asyncio
async def test_upload_oversize_is_413(client):
    session_id = await create_session(client)
    data = make_image_bytes()
    data += b"\0" * (11 * MiB - len(data))

    response = await upload_png(client, session_id, data=data)

    assert response.status_code == 413
    assert response.json()["details"]["limit_bytes"] == 10 * MiB
    assert await drain(client, session_id) == ["File size should be less than 10 MB"]


@pytest.mark.asyncio
async def test_upload_non_image_is_415(client):
    session_id = await create_session(client)

    response = await client.post(
        f"{SESSIONS}/{session_id}/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")}
    )

    assert response.status_code == 415
    assert response.json()["error"] == "Please select a valid image file"


@pytest.mark.asyncio
async def test_stage_while_running_is_409(client, segmenter):
    segmenter.gate = asyncio.Event()
    session_id = await create_session(client)
    await upload_png(client, session_id)

    first = await client.post(f"{SESSIONS}/{session_id}/remove-background")
    second = await client.post(f"{SESSIONS}/{session_id}/remove-background")

    assert first.status_code == 202
    assert second.status_code == 409
    assert second.json()["error_type"] == "PipelineBusyError"

    snapshot = (await client.get(f"{SESSIONS}/{session_id}")).json()
    assert snapshot["state"] == "removing_background"
    assert snapshot["can_remove_background"] is False

    segmenter.gate.set()
    body = await wait_until_idle(client, session_id)
    assert body["state"] == "bg_ready"


@pytest.mark.asyncio
async def test_cartoonize_without_background_removed_is_not_accepted(client, cartoon_api):
    session_id = await create_session(client)
    await upload_png(client, session_id)

    response = await client.post(f"{SESSIONS}/{session_id}/cartoonize")

    assert response.status_code == 200
    assert response.json()["accepted"] is False
    assert cartoon_api.requests == []


@pytest.mark.asyncio
async def test_failed_cartoonize_then_retry(client, cartoon_api):
    session_id = await create_session(client)
    await upload_png(client, session_id)
    await client.post(f"{SESSIONS}/{session_id}/remove-background")
    await wait_until_idle(client, session_id)

    cartoon_api.respond_json({"cartoonUrl": None})
    await client.post(f"{SESSIONS}/{session_id}/cartoonize")
    body = await wait_until_idle(client, session_id)

    assert body["state"] == "style_failed"
    assert body["status"]["last_failed_stage"] == "stylization"
    assert body["background_removed"] is not None
    assert body["can_retry"] is True

    cartoon_api.respond_json({"cartoonUrl": "https://x/y.png"})
    response = await client.post(f"{SESSIONS}/{session_id}/retry")
    assert response.status_code == 202

    body = await wait_until_idle(client, session_id)
    assert body["state"] == "stylized"
    assert body["status"]["last_failed_stage"] == "none"


@pytest.mark.asyncio
async def test_download_headers(client):
    session_id = await create_session(client)
    await upload_png(client, session_id)
    await client.post(f"{SESSIONS}/{session_id}/remove-background")
    await wait_until_idle(client, session_id)

    response = await client.get(f"{SESSIONS}/{session_id}/download/bg-removed")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert re.fullmatch(
        r'attachment; filename="bg-removed-\d{13}\.png"',
        response.headers["content-disposition"]
    )
    assert response.content[:8] == b"\x89PNG\r\n\x1a\n"


@pytest.mark.asyncio
async def test_download_missing_result_is_204(client):
    session_id = await create_session(client)

    response = await client.get(f"{SESSIONS}/{session_id}/download/cartoon")

    assert response.status_code == 204


@pytest.mark.asyncio
async def test_download_unknown_kind_is_422(client):
    session_id = await create_session(client)

    response = await client.get(f"{SESSIONS}/{session_id}/download/sketch")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_reset_and_delete(client):
    session_id = await create_session(client)
    await upload_png(client, session_id)

    response = await client.post(f"{SESSIONS}/{session_id}/reset")
    assert response.status_code == 200
    assert response.json()["image"] is None
    assert response.json()["state"] == "idle"

    response = await client.delete(f"{SESSIONS}/{session_id}")
    assert response.status_code == 204

    response = await client.get(f"{SESSIONS}/{session_id}")
    assert response.status_code == 404
