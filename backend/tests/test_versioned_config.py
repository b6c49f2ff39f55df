"""
Versioned config sync: push to STG then PROD, roll back to version N-1,
and refuse to act on a cached record the live config service contradicts.
"""

import json

import pytest

from config_sync import ConfigStatus, VersionedConfigSync
from core.errors import StaleStateError, ValidationError
from db.models import VersionedConfig
from integrations.base import Env

NAME = "offers:promotion:iap:store-translated"


class FakeConfigClient:
    """Live versions per environment; every write appends a version."""

    def __init__(self, stg_versions: int = 3, prod_versions: int = 5):
        self.docs = {
            Env.STG: {v: json.dumps({"stg": v}) for v in range(1, stg_versions + 1)},
            Env.PROD: {v: json.dumps({"prod": v}) for v in range(1, prod_versions + 1)},
        }
        self.validated: list[tuple[str, dict]] = []

    def current(self, env: Env) -> int:
        return max(self.docs[env])

    def external_edit(self, env: Env, value: dict) -> int:
        self.docs[env][self.current(env) + 1] = json.dumps(value)
        return self.current(env)

    async def get_config(self, env, name, version="current"):
        version = self.current(env) if version == "current" else int(version)
        return {
            "configurationVersion": version,
            "configurationValue": self.docs[env][version],
            "contentType": "application/json",
            "cacheDurationSeconds": 60,
        }

    async def current_version(self, env, name):
        return self.current(env)

    async def validate_update(self, env, name, payload):
        self.validated.append((env.value, payload))
        return {}

    async def commit_update(self, env, name, payload):
        return self.external_edit(env, json.loads(payload["configurationValue"]))

    async def rollback_to_version(self, env, name, version):
        if self.current(env) - version > 1:
            raise StaleStateError(f"Configuration {name} is outdated on {env.value.upper()}", 409)
        self.docs[env][self.current(env) + 1] = self.docs[env][version]
        return self.current(env)


@pytest.fixture
def remote():
    return FakeConfigClient()


@pytest.fixture
def sync(sessions, remote, retry_policy):
    return VersionedConfigSync(NAME, sessions, remote, retry_policy=retry_policy)


@pytest.mark.asyncio
class TestPush:
    async def test_new_config_reports_live_versions(self, sync):
        state = await sync.read()

        assert state.status == ConfigStatus.NEW
        assert (state.stg_version, state.prod_version) == (3, 5)
        assert state.error_message is None

    async def test_push_to_staging_records_written_version(self, sync, remote):
        state = await sync.read()

        pushed = await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test", expected_state=state)

        assert pushed.status == ConfigStatus.STG
        assert pushed.stg_version == 4
        assert pushed.updated_by == "ops@offerops.test"
        assert pushed.can_retire is True
        assert json.loads(remote.docs[Env.STG][4]) == {"title": "Hola"}
        assert remote.validated[0][0] == "stg"

    async def test_production_requires_staging_first(self, sync):
        with pytest.raises(ValidationError, match="push .* to STG before publishing to PROD") as exc_info:
            await sync.push({"title": "Hola"}, Env.PROD, "ops@offerops.test")
        assert exc_info.value.status_code == 400

    async def test_push_to_production_after_staging(self, sync, remote):
        staged = await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")

        published = await sync.push({"title": "Hola"}, Env.PROD, "ops@offerops.test", expected_state=staged)

        assert published.status == ConfigStatus.PROD
        assert (published.stg_version, published.prod_version) == (4, 6)
        assert json.loads(remote.docs[Env.PROD][6]) == {"title": "Hola"}

    async def test_concurrent_editor_is_refused(self, sync):
        first_read = await sync.read()
        await sync.push({"title": "B"}, Env.STG, "b@offerops.test", expected_state=await sync.read())

        with pytest.raises(StaleStateError, match="modified by another user"):
            await sync.push({"title": "A"}, Env.STG, "a@offerops.test", expected_state=first_read)

    async def test_external_staging_edit_blocks_production_push(self, sync, remote, sessions):
        staged = await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")
        remote.external_edit(Env.STG, {"title": "edited by hand"})

        with pytest.raises(StaleStateError, match="modified on STG"):
            await sync.push({"title": "Hola"}, Env.PROD, "ops@offerops.test", expected_state=staged)

        async with sessions() as db:
            assert await db.get(VersionedConfig, NAME) is None
        assert remote.current(Env.PROD) == 5

    async def test_stale_cache_is_discarded_then_fresh_cycle_starts(self, sync, remote, sessions):
        async with sessions() as db:
            db.add(VersionedConfig(name=NAME, status_id=int(ConfigStatus.STG), stg_rollback_version=5))
            await db.commit()
        remote.external_edit(Env.STG, {"x": 1})
        remote.external_edit(Env.STG, {"x": 2})
        remote.external_edit(Env.STG, {"x": 3})
        remote.external_edit(Env.STG, {"x": 4})
        assert remote.current(Env.STG) == 7

        state = await sync.read()

        assert state.status == ConfigStatus.NEW
        assert state.stg_version == 7
        assert "outside OfferOps" in state.error_message
        async with sessions() as db:
            assert await db.get(VersionedConfig, NAME) is None

        pushed = await sync.push({"title": "fresh"}, Env.STG, "ops@offerops.test", expected_state=state)
        assert pushed.status == ConfigStatus.STG
        assert pushed.stg_version == 8

    async def test_load_returns_staged_document(self, sync):
        loaded = await sync.load()
        assert loaded["env"] == "prod"
        assert loaded["document"] == {"prod": 5}

        await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")
        loaded = await sync.load()
        assert loaded["env"] == "stg"
        assert loaded["document"] == {"title": "Hola"}


@pytest.mark.asyncio
class TestRollback:
    async def test_staging_rollback_restores_previous_version(self, sync, remote):
        await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")

        await sync.rollback()

        assert remote.current(Env.STG) == 5
        assert remote.docs[Env.STG][5] == remote.docs[Env.STG][3]
        assert (await sync.read()).status == ConfigStatus.NEW

    async def test_production_rollback_restores_both_environments(self, sync, remote):
        staged = await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")
        await sync.push({"title": "Hola"}, Env.PROD, "ops@offerops.test", expected_state=staged)

        await sync.rollback()

        assert remote.docs[Env.PROD][remote.current(Env.PROD)] == remote.docs[Env.PROD][5]
        assert remote.docs[Env.STG][remote.current(Env.STG)] == remote.docs[Env.STG][3]

    async def test_second_rollback_is_refused(self, sync, remote):
        await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")
        await sync.rollback()
        versions_after_first = remote.current(Env.STG)

        with pytest.raises(ValidationError, match="no change to roll back"):
            await sync.rollback()
        assert remote.current(Env.STG) == versions_after_first

    async def test_rollback_after_external_edit_is_refused(self, sync, remote):
        await sync.push({"title": "Hola"}, Env.STG, "ops@offerops.test")
        remote.external_edit(Env.STG, {"title": "edited by hand"})

        with pytest.raises(StaleStateError, match="outside OfferOps"):
            await sync.rollback()
        assert remote.current(Env.STG) == 5
