"""Tests for the operator HTTP API."""

import asyncio

import pytest
from aiohttp import test_utils

from api import PASSWORD_MASK, Services, create_app
from config import Config

pytestmark = pytest.mark.anyio

NTFY = {
    "id": "phone",
    "name": "Phone",
    "type": "ntfy",
    "config": {"server_url": "https://ntfy.example.com", "topic": "news"},
}


@pytest.fixture
def services(db, fake_dispatcher):
    services = Services.from_config(Config(), db=db)
    services.dispatcher = fake_dispatcher
    services.composer.dispatcher = fake_dispatcher
    return services


@pytest.fixture
async def client(services):
    app = create_app(services, background=False)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


async def _ingest(client, n: int, category: str = "tech") -> int:
    resp = await client.post("/api/reading", json={
        "id": f"item-{category}-{n}",
        "title": f"Headline {n}",
        "url": f"https://example.com/{n}",
        "category": category,
    })
    assert resp.status == 201
    return (await resp.json())["entry_id"]


class TestReading:

    async def test_ingest_and_status(self, client):
        await _ingest(client, 1)
        await _ingest(client, 2)

        resp = await client.get("/api/status")
        body = await resp.json()

        assert resp.status == 200
        assert body["unpushed"] == 2
        assert body["monitor"]["state"] == "idle"
        assert body["composer"]["busy"] is False
        assert body["reconciliations"] == []

    async def test_list_and_remove(self, client):
        entry_id = await _ingest(client, 1)

        body = await (await client.get("/api/reading?pushed=false")).json()
        assert [e["entry_id"] for e in body["entries"]] == [entry_id]
        assert body["unpushed"] == 1

        resp = await client.delete(f"/api/reading/{entry_id}")
        assert resp.status == 200
        resp = await client.delete(f"/api/reading/{entry_id}")
        assert resp.status == 404

    async def test_invalid_json(self, client):
        resp = await client.post("/api/reading", data="{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400

    async def test_item_without_title(self, client):
        resp = await client.post("/api/reading", json={"url": "https://example.com"})
        assert resp.status == 400

    async def test_clear_pushed(self, client, services):
        entry_id = await _ingest(client, 1)
        services.db.mark_pushed([entry_id], services.db.get_entry(entry_id).added_at)

        body = await (await client.post("/api/reading/clear-pushed")).json()
        assert body == {"removed": 1}

    async def test_ingest_triggers_auto_push(self, client, services, fake_dispatcher):
        await client.post("/api/channels", json=NTFY)
        resp = await client.put("/api/auto-push", json={"enabled": True, "threshold": 2, "channel_id": "phone"})
        assert resp.status == 200

        await _ingest(client, 1)
        await _ingest(client, 2)
        for _ in range(50):
            if fake_dispatcher.calls:
                break
            await asyncio.sleep(0.01)

        assert fake_dispatcher.calls == 1
        assert services.db.count_unpushed() == 0


class TestChannels:

    async def test_validation_error_is_400(self, client):
        resp = await client.post("/api/channels", json={"name": "Mail", "type": "email", "config": {}})
        body = await resp.json()
        assert resp.status == 400
        assert body["kind"] == "config"

    async def test_password_masked_and_preserved(self, client, services):
        mail = {
            "id": "mail",
            "name": "Mail",
            "type": "email",
            "config": {
                "smtp_host": "smtp.example.com",
                "from_address": "bot@example.com",
                "to_addresses": ["ops@example.com"],
                "username": "bot",
                "password": "hunter2",
            },
        }
        resp = await client.post("/api/channels", json=mail)
        assert resp.status == 201

        [listed] = await (await client.get("/api/channels")).json()
        assert listed["config"]["password"] == PASSWORD_MASK

        listed["name"] = "Renamed"
        await client.post("/api/channels", json=listed)
        assert services.db.get_channel("mail").config.password == "hunter2"

    async def test_channel_test(self, client, fake_dispatcher):
        await client.post("/api/channels", json=NTFY)

        body = await (await client.post("/api/channels/phone/test")).json()
        assert body == {"ok": True}
        assert fake_dispatcher.tests == ["phone"]

        resp = await client.post("/api/channels/missing/test")
        assert resp.status == 404


class TestTemplates:

    async def test_preview_compile_error(self, client):
        resp = await client.post("/api/templates/preview", json={"content": "<p>\n{{ count }\n</p>"})
        body = await resp.json()
        assert resp.status == 400
        assert body["kind"] == "compile"
        assert body["line"] == 2

    async def test_preview_render_error(self, client):
        resp = await client.post("/api/templates/preview", json={"content": "{{ count // 0 }}"})
        assert resp.status == 400
        assert (await resp.json())["kind"] == "render"

    async def test_preview_with_samples(self, client):
        resp = await client.post("/api/templates/preview", json={"builtin": "default"})
        body = await resp.json()
        assert resp.status == 200
        assert body["item_count"] == 3

    async def test_save_and_list(self, client):
        resp = await client.post("/api/templates", json={"name": "Short", "content": "{{ count }}"})
        assert resp.status == 201

        body = await (await client.get("/api/templates")).json()
        assert [t["name"] for t in body["templates"]] == ["Short"]
        assert body["builtin"] == ["bilingual", "default"]


class TestTasks:

    async def test_run_now_returns_202_and_is_pollable(self, client, services):
        await client.post("/api/channels", json=NTFY)
        resp = await client.post("/api/tasks", json={
            "id": "hourly",
            "name": "Hourly",
            "cron_expr": "0 * * * *",
            "channel_id": "phone",
            "categories": "tech",
        })
        assert resp.status == 201
        await _ingest(client, 1, "tech")
        await _ingest(client, 2, "ai")

        resp = await client.post("/api/tasks/hourly/run")
        assert resp.status == 202
        run_id = (await resp.json())["run_id"]

        status = None
        for _ in range(50):
            status = await (await client.get(f"/api/runs/{run_id}")).json()
            if status["status"] in ("succeeded", "failed"):
                break
            await asyncio.sleep(0.01)

        assert status["status"] == "succeeded"
        assert status["sent_count"] == 1
        assert services.db.count_unpushed() == 1

    async def test_invalid_cron_is_400(self, client):
        await client.post("/api/channels", json=NTFY)
        resp = await client.post("/api/tasks", json={"name": "Bad", "cron_expr": "soon", "channel_id": "phone"})
        assert resp.status == 400

    async def test_unknown_ids_are_404(self, client):
        assert (await client.post("/api/tasks/nope/run")).status == 404
        assert (await client.get("/api/runs/nope")).status == 404
        assert (await client.delete("/api/tasks/nope")).status == 404
        assert (await client.delete("/api/templates/nope")).status == 404
        assert (await client.delete("/api/channels/nope")).status == 404

    async def test_auto_push_validation(self, client):
        resp = await client.put("/api/auto-push", json={"enabled": True, "threshold": 0, "channel_id": "x"})
        assert resp.status == 400

        body = await (await client.get("/api/auto-push")).json()
        assert body["threshold"] == 6
        assert body["pending"] == 0
