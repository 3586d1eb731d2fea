"""HTTP tests for the Clarity API."""

import asyncio

import pytest
from httpx import AsyncClient

from clarity.api.deps import create_access_token
from clarity.config import get_settings
from clarity.db.models import User


@pytest.fixture
async def brain_id(client: AsyncClient, auth_headers) -> str:
    response = await client.post("/brains/", json={"name": "Biology"}, headers=auth_headers)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
async def stream_id(client: AsyncClient, auth_headers, brain_id) -> str:
    response = await client.post(f"/brains/{brain_id}/streams", json={"name": "Cells"}, headers=auth_headers)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def create_saved(client: AsyncClient, auth_headers, brain_id):
    async def create(title: str, content: str = "Some content") -> dict:
        response = await client.post(
            "/cards/saved",
            json={"brain_id": brain_id, "title": title, "content": content},
            headers=auth_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    return create


@pytest.fixture
async def other_headers(session_factory) -> dict[str, str]:
    async with session_factory() as session:
        other = User(email="grace@example.com", name="Grace")
        session.add(other)
        await session.commit()
    return {"Authorization": f"Bearer {create_access_token(other.id)}"}


async def stream_titles(client, stream_id, headers) -> list:
    response = await client.get(f"/streams/{stream_id}", headers=headers)
    assert response.status_code == 200
    return [entry["card"].get("title") for entry in response.json()["cards"]]


class TestAuth:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "job_queue": "running"}

    async def test_requires_token(self, client: AsyncClient):
        response = await client.get("/auth/me")
        assert response.status_code == 401

    async def test_rejects_bad_token(self, client: AsyncClient):
        response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_me(self, client: AsyncClient, auth_headers, user):
        response = await client.get("/auth/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["email"] == user.email

    async def test_cookie_auth(self, client: AsyncClient, user):
        client.cookies.set("access_token", create_access_token(user.id))
        response = await client.get("/auth/me")
        assert response.status_code == 200

    async def test_storage_usage(self, client: AsyncClient, auth_headers, create_saved):
        await create_saved("Sized", "12345")
        response = await client.get("/auth/me/storage", headers=auth_headers)
        assert response.json()["storage_used"] == 5


class TestBrains:
    async def test_crud(self, client: AsyncClient, auth_headers, brain_id):
        listing = await client.get("/brains/", headers=auth_headers)
        assert [b["name"] for b in listing.json()] == ["Biology"]

        renamed = await client.patch(f"/brains/{brain_id}", json={"name": "Botany"}, headers=auth_headers)
        assert renamed.json()["name"] == "Botany"

        deleted = await client.delete(f"/brains/{brain_id}", headers=auth_headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/brains/{brain_id}", headers=auth_headers)
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

    async def test_duplicate_name(self, client: AsyncClient, auth_headers, brain_id):
        response = await client.post("/brains/", json={"name": "Biology"}, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["fields"] == {"name": "already exists"}

    async def test_other_users_brain_is_not_found(self, client: AsyncClient, brain_id, other_headers):
        response = await client.get(f"/brains/{brain_id}", headers=other_headers)
        assert response.status_code == 404

    async def test_check_title(self, client: AsyncClient, auth_headers, brain_id, create_saved):
        await create_saved("Osmosis")
        taken = await client.get(f"/brains/{brain_id}/check-title", params={"title": "Osmosis"}, headers=auth_headers)
        free = await client.get(f"/brains/{brain_id}/check-title", params={"title": "osmosis"}, headers=auth_headers)
        assert taken.json()["exists"] is True
        assert free.json()["exists"] is False

    async def test_list_cards_with_filters(self, client: AsyncClient, auth_headers, brain_id, stream_id, create_saved):
        await create_saved("Osmosis", "water moves")
        await client.post(
            "/cards/unsaved",
            json={"brain_id": brain_id, "stream_id": stream_id, "content": "draft about water"},
            headers=auth_headers,
        )

        saved_only = await client.get(f"/brains/{brain_id}/cards", params={"card_type": "saved"}, headers=auth_headers)
        search = await client.get(f"/brains/{brain_id}/cards", params={"q": "water"}, headers=auth_headers)

        assert [c["title"] for c in saved_only.json()] == ["Osmosis"]
        assert {c["card_type"] for c in search.json()} == {"saved", "unsaved"}

    async def test_recalculate_storage_job(self, client: AsyncClient, auth_headers, brain_id, create_saved):
        await create_saved("Sized", "1234")
        response = await client.post(f"/brains/{brain_id}/recalculate-storage", headers=auth_headers)
        assert response.status_code == 202
        job_id = response.json()["id"]

        for _ in range(200):
            job = (await client.get(f"/jobs/{job_id}", headers=auth_headers)).json()
            if job["status"] == "completed":
                break
            await asyncio.sleep(0.01)
        assert job["status"] == "completed"
        assert job["output_data"]["storage_used"] == 4


class TestStreams:
    async def test_ledger_scenario_over_http(self, client: AsyncClient, auth_headers, stream_id, create_saved):
        ids = {}
        for title in ("A", "B", "C", "D"):
            ids[title] = (await create_saved(title))["id"]
        for title in ("A", "B", "C"):
            response = await client.post(f"/streams/{stream_id}/cards", json={"card_id": ids[title]}, headers=auth_headers)
            assert response.status_code == 201

        inserted = await client.post(
            f"/streams/{stream_id}/cards", json={"card_id": ids["D"], "position": 1}, headers=auth_headers
        )
        assert inserted.json()["position"] == 1
        assert await stream_titles(client, stream_id, auth_headers) == ["A", "D", "B", "C"]

        removed = await client.delete(f"/streams/{stream_id}/cards/{ids['B']}", headers=auth_headers)
        assert removed.json() == {"removed": True}
        assert await stream_titles(client, stream_id, auth_headers) == ["A", "D", "C"]

        moved = await client.put(
            f"/streams/{stream_id}/cards/{ids['C']}/position", json={"position": 0}, headers=auth_headers
        )
        assert moved.json() == {"moved": True}
        assert await stream_titles(client, stream_id, auth_headers) == ["C", "A", "D"]

        unchanged = await client.put(
            f"/streams/{stream_id}/cards/{ids['C']}/position", json={"position": 0}, headers=auth_headers
        )
        assert unchanged.json() == {"moved": False}

    async def test_out_of_range_move_is_a_validation_error(self, client: AsyncClient, auth_headers, stream_id, create_saved):
        card = await create_saved("Only")
        await client.post(f"/streams/{stream_id}/cards", json={"card_id": card["id"]}, headers=auth_headers)

        response = await client.put(
            f"/streams/{stream_id}/cards/{card['id']}/position", json={"position": 5}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_insert_past_end_is_rejected(self, client: AsyncClient, auth_headers, stream_id, create_saved):
        card = await create_saved("Card")
        response = await client.post(
            f"/streams/{stream_id}/cards", json={"card_id": card["id"], "position": 1}, headers=auth_headers
        )
        assert response.status_code == 400

    async def test_toggles_and_stats(self, client: AsyncClient, auth_headers, stream_id, create_saved):
        card = await create_saved("Card")
        await client.post(f"/streams/{stream_id}/cards", json={"card_id": card["id"]}, headers=auth_headers)

        toggled = await client.post(
            f"/streams/{stream_id}/cards/{card['id']}/toggle-ai-context", headers=auth_headers
        )
        assert toggled.json() == {"value": True}
        context = await client.get(f"/streams/{stream_id}/ai-context", headers=auth_headers)
        assert [entry["card"]["id"] for entry in context.json()] == [card["id"]]

        collapsed = await client.post(
            f"/streams/{stream_id}/cards/{card['id']}/toggle-collapsed", headers=auth_headers
        )
        assert collapsed.json() == {"value": True}

        updated = await client.patch(
            f"/streams/{stream_id}/cards/{card['id']}", json={"depth": 2}, headers=auth_headers
        )
        assert updated.json()["depth"] == 2

        stats = await client.get(f"/streams/{stream_id}/stats", headers=auth_headers)
        assert stats.json()["has_gaps"] is False
        assert stats.json()["ai_context_count"] == 1

        normalized = await client.post(f"/streams/{stream_id}/normalize", headers=auth_headers)
        assert normalized.json() == {"updated": 0}

    async def test_update_and_delete_stream(self, client: AsyncClient, auth_headers, brain_id, stream_id):
        draft = await client.post(
            "/cards/unsaved", json={"brain_id": brain_id, "stream_id": stream_id}, headers=auth_headers
        )
        draft_id = draft.json()["card"]["id"]

        favorited = await client.patch(f"/streams/{stream_id}", json={"is_favorited": True}, headers=auth_headers)
        assert favorited.json()["is_favorited"] is True

        deleted = await client.delete(f"/streams/{stream_id}", headers=auth_headers)
        assert deleted.status_code == 204
        assert (await client.get(f"/streams/{stream_id}", headers=auth_headers)).status_code == 404
        assert (await client.get(f"/cards/{draft_id}", headers=auth_headers)).status_code == 404

    async def test_generate_streams_into_new_card(
        self, client: AsyncClient, auth_headers, stream_id, create_saved, fake_anthropic
    ):
        context = await create_saved("Context", "Chloroplasts capture light")
        await client.post(
            f"/streams/{stream_id}/cards",
            json={"card_id": context["id"], "is_in_ai_context": True},
            headers=auth_headers,
        )

        response = await client.post(
            f"/streams/{stream_id}/generate", json={"prompt": "Summarize photosynthesis"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert "event: card" in response.text
        assert "event: done" in response.text
        assert "Chloroplasts capture light" in fake_anthropic.messages.calls[0]["system"]

        stream = (await client.get(f"/streams/{stream_id}", headers=auth_headers)).json()
        generated = stream["cards"][1]["card"]
        assert generated["card_type"] == "unsaved"
        assert generated["content"] == "Generated card text"


class TestCards:
    async def test_duplicate_saved_title(self, client: AsyncClient, auth_headers, brain_id, create_saved):
        await create_saved("Osmosis")
        response = await client.post(
            "/cards/saved",
            json={"brain_id": brain_id, "title": "Osmosis", "content": "again"},
            headers=auth_headers,
        )
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    async def test_empty_title_is_rejected(self, client: AsyncClient, auth_headers, brain_id):
        response = await client.post(
            "/cards/saved", json={"brain_id": brain_id, "title": "  ", "content": "x"}, headers=auth_headers
        )
        assert response.status_code == 400

    async def test_unsaved_card_lifecycle(self, client: AsyncClient, auth_headers, brain_id, stream_id):
        created = await client.post(
            "/cards/unsaved",
            json={"brain_id": brain_id, "stream_id": stream_id, "content": ""},
            headers=auth_headers,
        )
        assert created.status_code == 201
        entry = created.json()
        assert entry["position"] == 0
        assert entry["card"]["card_type"] == "unsaved"
        assert entry["card"]["stream_id"] == stream_id
        card_id = entry["card"]["id"]

        converted = await client.post(f"/cards/{card_id}/convert", json={"title": "Mitosis"}, headers=auth_headers)
        assert converted.status_code == 200
        assert converted.json()["card_type"] == "saved"
        assert converted.json()["title"] == "Mitosis"

        again = await client.post(f"/cards/{card_id}/convert", json={"title": "Meiosis"}, headers=auth_headers)
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_state"

        detail = await client.get(f"/cards/{card_id}", headers=auth_headers)
        assert [s["stream_id"] for s in detail.json()["streams"]] == [stream_id]

    async def test_links_are_resolved_in_background(self, client: AsyncClient, auth_headers, create_saved):
        target = await create_saved("Osmosis")
        source = await create_saved("Cells", "Water crosses membranes by [[Osmosis]]; see [[Diffusion]]")

        for _ in range(200):
            links = (await client.get(f"/cards/{source['id']}/links", headers=auth_headers)).json()
            if links["forward_links"]:
                break
            await asyncio.sleep(0.01)

        assert [link["card"]["id"] for link in links["forward_links"]] == [target["id"]]
        backlinks = (await client.get(f"/cards/{target['id']}/links", headers=auth_headers)).json()["backlinks"]
        assert [link["card"]["id"] for link in backlinks] == [source["id"]]

        summary = await client.post(f"/cards/{source['id']}/resolve-links", headers=auth_headers)
        assert summary.json() == {"links_found": 2, "links_resolved": 1, "broken_links": 1}

    async def test_update_and_delete(self, client: AsyncClient, auth_headers, stream_id, create_saved):
        card = await create_saved("Osmosis", "old")
        await client.post(f"/streams/{stream_id}/cards", json={"card_id": card["id"]}, headers=auth_headers)

        updated = await client.patch(
            f"/cards/{card['id']}", json={"title": "Osmosis 2", "content": "new"}, headers=auth_headers
        )
        assert updated.json()["title"] == "Osmosis 2"
        assert updated.json()["content"] == "new"

        deleted = await client.delete(f"/cards/{card['id']}", headers=auth_headers)
        assert deleted.status_code == 204
        assert await stream_titles(client, stream_id, auth_headers) == []
        assert (await client.get(f"/cards/{card['id']}", headers=auth_headers)).status_code == 404


class TestUploadsAndJobs:
    async def test_inline_upload_into_stream(self, client: AsyncClient, auth_headers, brain_id, stream_id):
        response = await client.post(
            f"/uploads/brains/{brain_id}",
            files=[("files", ("notes.md", b"# Cell notes", "text/markdown"))],
            data={"stream_id": stream_id},
            headers=auth_headers,
        )

        assert response.status_code == 201, response.text
        body = response.json()
        assert body["summary"] == {"total": 1, "completed": 1, "queued": 0, "failed": 0}
        assert await stream_titles(client, stream_id, auth_headers) == ["notes.md"]

    async def test_background_upload_reports_job(self, client: AsyncClient, auth_headers, brain_id):
        response = await client.post(
            f"/uploads/brains/{brain_id}",
            files=[("files", ("later.txt", b"plain text", "text/plain"))],
            data={"force_background": "true", "processing_priority": "high"},
            headers=auth_headers,
        )
        [job_id] = response.json()["job_ids"]

        for _ in range(200):
            job = (await client.get(f"/jobs/{job_id}", headers=auth_headers)).json()
            if job["status"] in ("completed", "failed"):
                break
            await asyncio.sleep(0.01)

        assert job["status"] == "completed"
        assert job["job_type"] == "FILE_PROCESSING"
        assert job["priority"] == 10

        jobs = (await client.get("/jobs/", headers=auth_headers)).json()
        assert job_id in [j["id"] for j in jobs]
        stats = (await client.get("/jobs/stats", headers=auth_headers)).json()
        assert stats["is_running"] is True

    async def test_unsupported_upload(self, client: AsyncClient, auth_headers, brain_id):
        response = await client.post(
            f"/uploads/brains/{brain_id}",
            files=[("files", ("photo.png", b"\x89PNG", "image/png"))],
            headers=auth_headers,
        )
        assert response.status_code == 415
        assert response.json()["error"] == "unsupported_file_type"

    async def test_quota_exceeded(self, client: AsyncClient, auth_headers, brain_id, session_factory, user):
        async with session_factory() as session:
            row = await session.get(User, user.id)
            row.storage_quota = 4
            await session.commit()

        response = await client.post(
            f"/uploads/brains/{brain_id}",
            files=[("files", ("big.md", b"more than four bytes", "text/markdown"))],
            headers=auth_headers,
        )
        assert response.status_code == 507

    async def test_stream_from_another_brain(self, client: AsyncClient, auth_headers, brain_id, stream_id):
        other = await client.post("/brains/", json={"name": "Chemistry"}, headers=auth_headers)
        response = await client.post(
            f"/uploads/brains/{other.json()['id']}",
            files=[("files", ("notes.md", b"x", "text/markdown"))],
            data={"stream_id": stream_id},
            headers=auth_headers,
        )
        assert response.status_code == 400

    async def test_jobs_are_private(self, client: AsyncClient, auth_headers, other_headers, brain_id):
        response = await client.post(f"/brains/{brain_id}/recalculate-storage", headers=auth_headers)
        job_id = response.json()["id"]

        assert (await client.get(f"/jobs/{job_id}", headers=other_headers)).status_code == 404
        assert (await client.post(f"/jobs/{job_id}/cancel", headers=other_headers)).status_code == 404

    async def test_retry_and_cleanup_endpoints(self, client: AsyncClient, auth_headers):
        retried = await client.post(
            "/jobs/retry", json={"job_ids": ["00000000-0000-0000-0000-000000000000"]}, headers=auth_headers
        )
        assert retried.json() == {"job_ids": []}

        cleaned = await client.post("/jobs/cleanup", params={"days_old": 7}, headers=auth_headers)
        assert cleaned.json() == {"deleted": 0}

    async def test_cleanup_only_removes_own_jobs(self, client: AsyncClient, auth_headers, other_headers, brain_id):
        response = await client.post(f"/brains/{brain_id}/recalculate-storage", headers=auth_headers)
        job_id = response.json()["id"]
        for _ in range(200):
            job = (await client.get(f"/jobs/{job_id}", headers=auth_headers)).json()
            if job["status"] == "completed":
                break
            await asyncio.sleep(0.01)
        assert job["status"] == "completed"

        foreign = await client.post("/jobs/cleanup", params={"days_old": 0}, headers=other_headers)
        assert foreign.json() == {"deleted": 0}
        assert (await client.get(f"/jobs/{job_id}", headers=auth_headers)).status_code == 200

        own = await client.post("/jobs/cleanup", params={"days_old": 0}, headers=auth_headers)
        assert own.json() == {"deleted": 1}
        assert (await client.get(f"/jobs/{job_id}", headers=auth_headers)).status_code == 404

    async def test_queue_stats_hidden_outside_development(self, client: AsyncClient, auth_headers, monkeypatch):
        monkeypatch.setattr(get_settings(), "environment", "production")
        response = await client.get("/jobs/stats", headers=auth_headers)
        assert response.status_code == 404
