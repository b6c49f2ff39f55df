"""
Entities API: drafts, promotion endpoints and unique-code exports.
"""

import pytest

from api.deps import get_current_user
from api.main import app
from core.config import get_settings
from core.errors import RemoteBusyError
from integrations.base import Env
from promotion import Status

BASE = "/api/v1/stores/flex-us/entities"


@pytest.fixture
def queued_tasks(monkeypatch):
    sent = []

    def fake_send_task(name, args=None, kwargs=None, **options):
        sent.append((name, kwargs))

    monkeypatch.setattr("api.v1.routers.entities.celery_app.send_task", fake_send_task)
    return sent


@pytest.fixture
def csv_root(monkeypatch, tmp_path):
    root = tmp_path / "exports"
    root.mkdir()
    monkeypatch.setattr(get_settings(), "csv_root", str(root))
    return root


@pytest.mark.asyncio
class TestDrafts:
    async def test_create_draft(self, client, store):
        response = await client.post(
            f"{BASE}/",
            json={"entity_code": "SPRING24", "entity_type": "offer", "name": "Spring", "payload": {"discount": 20}},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "DRAFT"
        assert data["status_id"] == Status.DRAFT
        assert data["created_by"] == "ops@offerops.test"
        assert data["payload"] == {"discount": 20}

    async def test_create_in_unknown_store(self, client, store):
        response = await client.post(
            "/api/v1/stores/nowhere/entities/",
            json={"entity_code": "SPRING24", "entity_type": "offer"},
        )

        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    async def test_duplicate_code_is_rejected(self, client, make_entity):
        await make_entity()

        response = await client.post(f"{BASE}/", json={"entity_code": "SPRING24", "entity_type": "offer"})

        assert response.status_code == 406
        assert "already exists" in response.json()["message"]

    async def test_invalid_code_is_rejected(self, client, store):
        response = await client.post(f"{BASE}/", json={"entity_code": "has space", "entity_type": "offer"})
        assert response.status_code == 422

    async def test_get_missing_entity(self, client, store):
        response = await client.get(f"{BASE}/NOPE")

        assert response.status_code == 404
        assert response.json()["status"] == "fail"

    async def test_patch_draft(self, client, make_entity):
        await make_entity()

        response = await client.patch(f"{BASE}/SPRING24", json={"name": "Spring sale"})

        assert response.status_code == 200
        assert response.json()["name"] == "Spring sale"
        assert response.json()["last_modified_by"] == "ops@offerops.test"

    async def test_null_payload_is_rejected(self, client, make_entity):
        await make_entity(payload={"discount": 20})

        response = await client.patch(f"{BASE}/SPRING24", json={"payload": None})

        assert response.status_code == 406
        assert response.json()["kind"] == "validation"
        assert (await client.get(f"{BASE}/SPRING24")).json()["payload"] == {"discount": 20}

    async def test_promoted_entity_cannot_be_patched(self, client, make_entity):
        await make_entity(status=Status.STG_VALID)

        response = await client.patch(f"{BASE}/SPRING24", json={"name": "Too late"})

        assert response.status_code == 406
        assert response.json()["kind"] == "validation"


@pytest.mark.asyncio
class TestLifecycleEndpoints:
    async def test_promote_to_staging(self, client, make_entity, fake_billing):
        await make_entity()

        response = await client.post(f"{BASE}/SPRING24/promote", json={})

        assert response.status_code == 200
        assert response.json()["status"] == "STG_PENDING"
        assert fake_billing.live(Env.STG, "coupon", "SPRING24")

    async def test_promote_draft_to_production_is_rejected(self, client, make_entity, fake_billing):
        await make_entity()

        response = await client.post(f"{BASE}/SPRING24/promote", json={"target_env": "prod"})

        assert response.status_code == 406
        body = response.json()
        assert body["status"] == "fail"
        assert body["kind"] == "validation"
        assert fake_billing.calls == []

    async def test_validate_starts_ci_build(self, client, make_entity, fake_ci):
        await make_entity(status=Status.STG_PENDING)

        response = await client.post(f"{BASE}/SPRING24/validate", json={})

        assert response.status_code == 202
        assert response.json()["status"] == "STG_VALIDATING"
        assert response.json()["ci_build_key"] == "OFFERS-VAL-1"
        assert fake_ci.builds[0]["code"] == "SPRING24"

    async def test_remote_busy_is_reported(self, client, make_entity, fake_ci):
        await make_entity(status=Status.STG_PENDING)
        fake_ci.error = RemoteBusyError("CI is busy, try again in a few minutes", remote_system="ci")

        response = await client.post(f"{BASE}/SPRING24/validate", json={})

        assert response.status_code == 409
        assert response.json()["kind"] == "remote_busy"
        assert response.json()["remote_system"] == "ci"

    async def test_rollback_returns_to_draft(self, client, make_entity):
        await make_entity()
        await client.post(f"{BASE}/SPRING24/promote", json={})

        response = await client.post(f"{BASE}/SPRING24/rollback", json={"reason": "wrong discount"})

        assert response.status_code == 200
        assert response.json()["status"] == "DRAFT"

    async def test_history_lists_transitions(self, client, make_entity):
        await make_entity()
        await client.post(f"{BASE}/SPRING24/promote", json={})

        response = await client.get(f"{BASE}/SPRING24/history")

        assert response.status_code == 200
        statuses = [row["to_status"] for row in response.json()]
        assert statuses[0] == "DRAFT"
        assert statuses[-1] == "STG_PENDING"

    async def test_retire_draft(self, client, make_entity):
        await make_entity()

        response = await client.delete(f"{BASE}/SPRING24")

        assert response.status_code == 200
        assert response.json()["soft_deleted"] is False
        assert (await client.get(f"{BASE}/SPRING24")).status_code == 404


@pytest.mark.asyncio
class TestExports:
    async def test_export_is_queued(self, client, make_entity, queued_tasks, pending):
        await make_entity("BULK", status=Status.STG_VALID)

        response = await client.post(f"{BASE}/BULK/exports", json={"env": "stg"})

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert queued_tasks == [
            ("workers.exports.export_unique_codes", {"store_code": "flex-us", "code": "BULK", "env": "stg"})
        ]
        assert await pending.check("BULK") == "export_csv"

    async def test_duplicate_export_is_rejected(self, client, make_entity, queued_tasks):
        await make_entity("BULK", status=Status.STG_VALID)
        await client.post(f"{BASE}/BULK/exports", json={"env": "stg"})

        response = await client.post(f"{BASE}/BULK/exports", json={"env": "stg"})

        assert response.status_code == 406
        assert "in progress" in response.json()["message"]
        assert len(queued_tasks) == 1

    async def test_plan_has_nothing_to_export(self, client, make_entity, queued_tasks):
        await make_entity("GOLD", entity_type="plan")

        response = await client.post(f"{BASE}/GOLD/exports", json={"env": "stg"})

        assert response.status_code == 406
        assert queued_tasks == []

    async def test_dispatch_failure_releases_pending(self, client, make_entity, monkeypatch, pending):
        def broken_send_task(name, args=None, kwargs=None, **options):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr("api.v1.routers.entities.celery_app.send_task", broken_send_task)
        await make_entity("BULK", status=Status.STG_VALID)

        with pytest.raises(ConnectionError):
            await client.post(f"{BASE}/BULK/exports", json={"env": "stg"})

        assert await pending.check("BULK") is None

    async def test_status_running_ready_and_download(self, client, make_entity, queued_tasks, pending, csv_root):
        await make_entity("BULK", status=Status.STG_VALID)
        await client.post(f"{BASE}/BULK/exports", json={"env": "stg"})

        running = await client.get(f"{BASE}/BULK/exports", params={"env": "stg"})
        assert running.json()["status"] == "running"

        (csv_root / "flex-us_BULK_stg.csv").write_text("code,state\nC1,active\n")
        await pending.stop("BULK")

        ready = await client.get(f"{BASE}/BULK/exports", params={"env": "stg"})
        assert ready.json()["status"] == "ready"
        assert ready.json()["size_bytes"] > 0

        download = await client.get(f"{BASE}/BULK/exports/download", params={"env": "stg"})
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/csv")
        assert "C1,active" in download.text

    async def test_missing_export(self, client, make_entity, csv_root):
        await make_entity("BULK", status=Status.STG_VALID)

        status = await client.get(f"{BASE}/BULK/exports", params={"env": "prod"})
        download = await client.get(f"{BASE}/BULK/exports/download", params={"env": "prod"})

        assert status.json()["status"] == "missing"
        assert download.status_code == 404


@pytest.fixture
def anonymous(client):
    app.dependency_overrides.pop(get_current_user)
    return client


@pytest.mark.asyncio
class TestAuthentication:
    @pytest.mark.parametrize(
        "path",
        [
            f"{BASE}/BULK",
            f"{BASE}/BULK/history",
            f"{BASE}/BULK/exports",
            f"{BASE}/BULK/exports/download",
            "/api/v1/stores/",
            "/api/v1/stores/flex-us",
        ],
    )
    async def test_reads_require_credentials(self, anonymous, make_entity, csv_root, path):
        await make_entity("BULK", status=Status.STG_VALID)
        (csv_root / "flex-us_BULK_stg.csv").write_text("code,state\nC1,active\n")

        response = await anonymous.get(path)

        assert response.status_code == 401
        assert "C1,active" not in response.text

    async def test_invalid_token_is_rejected(self, anonymous, make_entity):
        await make_entity()

        response = await anonymous.get(f"{BASE}/SPRING24", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
