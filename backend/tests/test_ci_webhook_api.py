"""
CI webhook endpoint: signature check, malformed deliveries and verdicts.
"""

import json

import pytest

from core.config import get_settings
from core.security import sign_webhook_body
from integrations.base import Env
from promotion import Status

STORE_CODE = "flex-us"
SECRET = "ci-webhook-secret"


def _delivery(key: str, status: str = "SUCCESS") -> bytes:
    return json.dumps({"build": {"key": key, "status": status}}).encode()


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setattr(get_settings(), "ci_webhook_secret", SECRET)

    def _headers(body: bytes) -> dict:
        return {"x-ci-signature": sign_webhook_body(SECRET, body), "content-type": "application/json"}

    return _headers


@pytest.fixture
async def validating(machine, make_entity):
    await make_entity()
    await machine.promote(STORE_CODE, "SPRING24")
    entity = await machine.start_validation(STORE_CODE, "SPRING24")
    return entity


@pytest.mark.asyncio
class TestCIWebhook:
    async def test_success_marks_entity_valid(self, client, signed, validating, machine):
        body = _delivery(validating.ci_build_key)

        response = await client.post("/api/v1/ci/webhook?updatedBy=bamboo", content=body, headers=signed(body))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["entity_code"] == "SPRING24"
        assert data["entity_status"] == "STG_VALID"
        entity = await machine.repo.get(STORE_CODE, "SPRING24")
        assert entity.status_id == Status.STG_VALID
        assert entity.last_modified_by == "bamboo"

    async def test_failure_reverts_staging(self, client, signed, validating, fake_billing):
        body = _delivery(validating.ci_build_key, "FAILED")

        response = await client.post("/api/v1/ci/webhook", content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json()["entity_status"] == "STG_VALIDATION_FAILED"
        assert not fake_billing.live(Env.STG, "coupon", "SPRING24")

    async def test_redelivery_is_ignored(self, client, signed, validating):
        body = _delivery(validating.ci_build_key)
        await client.post("/api/v1/ci/webhook", content=body, headers=signed(body))

        response = await client.post("/api/v1/ci/webhook", content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert response.json()["reason"] == "unknown_build_key"

    async def test_bad_signature_is_rejected(self, client, signed, validating, machine):
        body = _delivery(validating.ci_build_key)

        response = await client.post(
            "/api/v1/ci/webhook",
            content=body,
            headers={"x-ci-signature": "0" * 64, "content-type": "application/json"},
        )

        assert response.status_code == 401
        assert (await machine.repo.get(STORE_CODE, "SPRING24")).status_id == Status.STG_VALIDATING

    async def test_missing_signature_is_rejected(self, client, signed):
        response = await client.post("/api/v1/ci/webhook", content=_delivery("OFFERS-VAL-1"))
        assert response.status_code == 401

    async def test_malformed_payload_is_acknowledged(self, client, signed):
        for body in (b"not json", b'{"build": {"status": "SUCCESS"}}', b"[]"):
            response = await client.post("/api/v1/ci/webhook", content=body, headers=signed(body))

            assert response.status_code == 200
            assert response.json() == {"status": "ignored", "reason": "malformed_payload"}

    async def test_unknown_build_key_is_acknowledged(self, client, signed):
        body = _delivery("OFFERS-VAL-999")

        response = await client.post("/api/v1/ci/webhook", content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json()["reason"] == "unknown_build_key"
