"""Integration tests for the studio and analytics API endpoints.

The app is wired with in-memory blob backends and a mocked hosted endpoint.
ASGITransport does not run the lifespan, so the fixture wires app state itself.
"""

import httpx
import pytest
import pytest_asyncio
from helpers import PNG_BYTES, VALID_API_KEY, GeminiHandler, gemini_image_response
from httpx import ASGITransport, AsyncClient

from imagestudio.app import create_app, init_app_state
from imagestudio.services.files import MB, ReferenceFile
from imagestudio.services.storage.backends import MemoryBlobBackend


@pytest.fixture
def image_backend() -> MemoryBlobBackend:
    return MemoryBlobBackend()


@pytest.fixture
def export_backend() -> MemoryBlobBackend:
    return MemoryBlobBackend()


@pytest.fixture
def app(settings, image_backend, export_backend, gemini_handler: GeminiHandler):
    app = create_app(settings)
    init_app_state(
        app,
        settings,
        blob_backend=image_backend,
        analytics_backend=export_backend,
        gemini_transport=httpx.MockTransport(gemini_handler),
    )
    return app


@pytest_asyncio.fixture
async def test_client(app):
    """Provide AsyncClient for testing API endpoints."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await app.state.sessions.shutdown_all()


def session_headers(session_id: str = "tab-a") -> dict[str, str]:
    return {"X-Studio-Session": session_id}


def reference_json(name: str = "ref.png", data: bytes = PNG_BYTES) -> dict:
    return ReferenceFile(name=name, content_type="image/png", data=data).serialize().model_dump()


async def wait_idle(app, session_id: str = "tab-a") -> None:
    await app.state.sessions.get(session_id).orchestrator.wait_idle()


@pytest.mark.asyncio
async def test_health(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
class TestGenerationEndpoints:
    """Test the /api/studio/generations endpoints."""

    async def test_start_returns_before_images_resolve(self, test_client, app):
        # Act
        response = await test_client.post(
            "/api/studio/generations",
            json={"prompt": "a paper boat", "image_count": 3, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )

        # Assert
        assert response.status_code == 202
        data = response.json()
        assert data["slot_ids"] == [f"{data['batch_id']}-{i}" for i in range(3)]

        slots = app.state.sessions.get("tab-a").orchestrator.slots
        assert len(slots) == 3

    async def test_completed_batch_is_listed(self, test_client, app, gemini_handler):
        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "a paper boat", "image_count": 2, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        await wait_idle(app)

        response = await test_client.get("/api/studio/generations", headers=session_headers())

        assert response.status_code == 200
        data = response.json()
        assert [slot["status"] for slot in data["slots"]] == ["completed", "completed"]
        assert len(data["completed_images"]) == 2
        assert data["has_active_generations"] is False
        assert gemini_handler.call_count == 2

    @pytest.mark.parametrize("count", [0, 6])
    async def test_invalid_count_rejected(self, test_client, app, count):
        response = await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": count, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )

        assert response.status_code == 422
        assert "between 1 and 5" in response.json()["detail"]
        assert app.state.sessions.get("tab-a").orchestrator.slots == []

    async def test_invalid_key_fails_slots_without_network(
        self, test_client, app, gemini_handler
    ):
        response = await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 1, "api_key": "AIzaSHORT"},
            headers=session_headers(),
        )
        await wait_idle(app)

        assert response.status_code == 202
        listed = await test_client.get("/api/studio/generations", headers=session_headers())
        slot = listed.json()["slots"][0]
        assert slot["status"] == "error"
        assert "39 characters" in slot["error"]
        assert gemini_handler.call_count == 0

    async def test_uploaded_references_used_by_default(
        self, test_client, app, gemini_handler
    ):
        await test_client.post(
            "/api/studio/references",
            json={"files": [reference_json("a.png"), reference_json("b.png")]},
            headers=session_headers(),
        )
        await app.state.sessions.get("tab-a").reference_tracker.wait()

        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "merge", "image_count": 1, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        await wait_idle(app)

        body = gemini_handler.requests[0].content
        assert body.count(b"inlineData") == 2

    async def test_retry_and_cancel_endpoints(self, test_client, app, gemini_handler):
        gemini_handler.status_code = 429
        gemini_handler.body = {"error": {"status": "RESOURCE_EXHAUSTED", "message": "quota"}}
        started = await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 1, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        slot_id = started.json()["slot_ids"][0]
        await wait_idle(app)

        # Cancel on an errored slot is a no-op
        cancelled = await test_client.post(
            f"/api/studio/generations/{slot_id}/cancel", headers=session_headers()
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["error"].startswith("API quota exceeded")

        gemini_handler.status_code = 200
        gemini_handler.body = gemini_image_response()
        retried = await test_client.post(
            f"/api/studio/generations/{slot_id}/retry", headers=session_headers()
        )
        assert retried.status_code == 200
        assert retried.json()["status"] == "generating"
        assert retried.json()["attempt"] == 2

        await wait_idle(app)
        final = await test_client.get("/api/studio/generations", headers=session_headers())
        assert final.json()["slots"][0]["status"] == "completed"

    async def test_unknown_slot_returns_404(self, test_client):
        for action in ("cancel", "retry"):
            response = await test_client.post(
                f"/api/studio/generations/missing-0/{action}", headers=session_headers()
            )
            assert response.status_code == 404

    async def test_clear_endpoints(self, test_client, app):
        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 2, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        await wait_idle(app)

        cleared = await test_client.delete(
            "/api/studio/generations/completed", headers=session_headers()
        )
        assert cleared.json() == {"removed": 2}

        all_cleared = await test_client.delete(
            "/api/studio/generations", headers=session_headers()
        )
        assert all_cleared.json() == {"removed": 0}

    async def test_sessions_are_isolated(self, test_client, app):
        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 2, "api_key": VALID_API_KEY},
            headers=session_headers("tab-a"),
        )
        await wait_idle(app, "tab-a")

        other = await test_client.get("/api/studio/generations", headers=session_headers("tab-b"))
        default = await test_client.get("/api/studio/generations")

        assert other.json()["slots"] == []
        assert default.json()["slots"] == []
        assert len(app.state.sessions) == 3

    async def test_start_counts_an_execution(self, test_client, app):
        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 1, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        await wait_idle(app)

        response = await test_client.get("/api/analytics/executions")

        assert response.json()["count"] == 1


@pytest.mark.asyncio
class TestReferenceEndpoints:
    async def test_upload_in_background(self, test_client, app, image_backend):
        response = await test_client.post(
            "/api/studio/references",
            json={"files": [reference_json("a.png"), reference_json("b.png")]},
            headers=session_headers(),
        )

        assert response.status_code == 202
        assert response.json()["is_uploading"] is True

        await app.state.sessions.get("tab-a").reference_tracker.wait()
        listed = await test_client.get("/api/studio/references", headers=session_headers())

        keys = listed.json()["reference_image_keys"]
        assert len(keys) == 2
        assert all(key in image_backend for key in keys)

    async def test_oversized_file_reported(self, test_client, app):
        big = reference_json("big.png", data=b"\x00" * (5 * MB + 1))

        response = await test_client.post(
            "/api/studio/references",
            json={"files": [reference_json("a.png"), big]},
            headers=session_headers(),
        )
        assert response.status_code == 202
        await app.state.sessions.get("tab-a").reference_tracker.wait()
        listed = await test_client.get("/api/studio/references", headers=session_headers())

        data = listed.json()
        assert len(data["reference_image_keys"]) == 1
        assert data["failed_uploads"][0]["file_name"] == "big.png"

    async def test_too_many_files_rejected(self, test_client):
        response = await test_client.post(
            "/api/studio/references",
            json={"files": [reference_json(f"r{i}.png") for i in range(6)]},
            headers=session_headers(),
        )

        assert response.status_code == 422

    async def test_clear(self, test_client, app):
        await test_client.post(
            "/api/studio/references",
            json={"files": [reference_json()]},
            headers=session_headers(),
        )
        await app.state.sessions.get("tab-a").reference_tracker.wait()

        response = await test_client.delete("/api/studio/references", headers=session_headers())

        assert response.json()["reference_image_keys"] == []


@pytest.mark.asyncio
class TestStorageEndpoints:
    async def test_view_image(self, test_client, image_backend):
        await image_backend.put("generations/a.png", PNG_BYTES, "image/png")

        response = await test_client.get(
            "/api/studio/images/view", params={"key": "generations/a.png"}
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith("data:image/png;base64,")

    async def test_view_errors(self, test_client, image_backend):
        await image_backend.put("generations/big.png", b"\x00" * (5 * MB + 1), "image/png")

        missing = await test_client.get(
            "/api/studio/images/view", params={"key": "generations/none.png"}
        )
        too_large = await test_client.get(
            "/api/studio/images/view", params={"key": "generations/big.png"}
        )
        bad_expiry = await test_client.get(
            "/api/studio/images/view", params={"key": "generations/big.png", "expires_in": 10}
        )

        assert missing.status_code == 404
        assert too_large.status_code == 413
        assert bad_expiry.status_code == 422

    async def test_gallery(self, test_client, app):
        await test_client.post(
            "/api/studio/generations",
            json={"prompt": "x", "image_count": 1, "api_key": VALID_API_KEY},
            headers=session_headers(),
        )
        await wait_idle(app)
        await app.state.view_resolver.resolve(
            app.state.sessions.get("tab-a").orchestrator.completed_images[0].storage_key
        )

        response = await test_client.get("/api/studio/gallery", headers=session_headers())

        [item] = response.json()["items"]
        assert item["view_status"] == "ready"
        assert item["url"].startswith("data:image/png;base64,")

    async def test_list_objects(self, test_client, image_backend):
        await image_backend.put("generations/a.png", b"x", "image/png")
        await image_backend.put("reference_image/b.png", b"x", "image/png")

        response = await test_client.get("/api/studio/objects", params={"prefix": "generations/"})

        data = response.json()
        assert response.status_code == 200
        assert [obj["key"] for obj in data["objects"]] == ["generations/a.png"]

    async def test_list_objects_limit_validated(self, test_client):
        response = await test_client.get("/api/studio/objects", params={"limit": 0})

        assert response.status_code == 422


@pytest.mark.asyncio
class TestAnalyticsEndpoints:
    async def test_track_and_read(self, test_client):
        await test_client.post("/api/analytics/executions")
        tracked = await test_client.post("/api/analytics/executions")

        read = await test_client.get("/api/analytics/executions")

        assert tracked.json()["count"] == 2
        assert read.json()["count"] == 2

    async def test_read_other_day(self, test_client):
        response = await test_client.get(
            "/api/analytics/executions", params={"date": "2020-02-02"}
        )

        assert response.json() == {
            "success": True,
            "count": 0,
            "date": "2020-02-02",
            "error": None,
        }

    async def test_export_list_download(self, test_client, export_backend):
        await test_client.post("/api/analytics/executions")

        exported = await test_client.post("/api/analytics/exports")
        filename = exported.json()["filename"]
        listed = await test_client.get("/api/analytics/exports")
        downloaded = await test_client.get(f"/api/analytics/exports/{filename}")

        assert exported.status_code == 201
        assert filename in export_backend
        assert [e["filename"] for e in listed.json()["exports"]] == [filename]
        assert '"executions": 1' in downloaded.json()["content"]

    async def test_export_for_date(self, test_client):
        response = await test_client.post("/api/analytics/exports", json={"date": "2024-12-31"})

        assert response.json()["filename"].startswith("analytics-2024-12-31-")

    async def test_missing_export(self, test_client):
        response = await test_client.get("/api/analytics/exports/analytics-none.json")

        assert response.status_code == 404
        assert response.json()["detail"] == "File not found"
