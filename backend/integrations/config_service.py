"""
Remote Config Service Client

Named configuration documents live in an external, versioned config
service. Every write produces a new monotonically increasing
``configurationVersion``; a rollback is simply re-committing the content
of an earlier version.

Endpoints (per environment host, ``/api/v{N}``):
  POST /Auth/client                                          -> bearer token
  GET  /applications/{app}/configurations/{name}/{version}   -> config at version
  POST /applications/{app}/configurations/{name}             -> commit (new version)
  POST ...?validateOnly=true                                 -> dry-run validation

Writes are serialized per environment by the caller holding the remote
mutex; this client does not lock.
"""

import json
from datetime import datetime
from typing import Any

from core.config import get_settings
from core.errors import StaleStateError
from core.retry import remote_call
from integrations.base import Env, RemoteClient, RemoteSystem

settings = get_settings()

CHANGED_BY = "OFFEROPS"


def build_update(current: dict, value: Any, *, comment: str) -> dict:
    """Payload for a commit, keeping the content type and cache settings of ``current``."""
    return {
        "configurationValue": value if isinstance(value, str) else json.dumps(value),
        "comments": f"{CHANGED_BY}: {comment} on {datetime.utcnow():%Y%m%d-%H%M%S}",
        "contentType": current.get("contentType", "application/json"),
        "cacheDurationSeconds": current.get("cacheDurationSeconds", 0),
        "lastChangedBy": CHANGED_BY,
    }


def parse_value(config: dict) -> Any:
    raw = config.get("configurationValue")
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class ConfigServiceClient(RemoteClient):
    system = RemoteSystem.CONFIG_SERVICE

    def host(self, env: Env) -> str:
        base = settings.config_service_prod if env == Env.PROD else settings.config_service_stg
        return f"{base.rstrip('/')}/api/v{settings.config_service_api_version}"

    def config_path(self, name: str) -> str:
        return f"applications/{settings.config_service_application}/configurations/{name}"

    def _api_key(self, env: Env) -> str:
        return settings.config_service_prod_api_key if env == Env.PROD else settings.config_service_stg_api_key

    async def _token(self, client, env: Env) -> str:
        response = await client.post(f"{self.host(env)}/Auth/client", json={"key": self._api_key(env)})
        response.raise_for_status()
        return response.json()["token"]

    async def _get(self, client, env: Env, token: str, name: str, version: int | str) -> dict:
        response = await client.get(
            f"{self.host(env)}/{self.config_path(name)}/{version}",
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        return response.json()

    async def _post(self, client, env: Env, token: str, name: str, payload: dict, *, validate_only: bool) -> dict:
        response = await client.post(
            f"{self.host(env)}/{self.config_path(name)}",
            params={"validateOnly": "true"} if validate_only else None,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    @remote_call
    async def get_config(self, env: Env, name: str, version: int | str = "current") -> dict:
        async with self._client() as client:
            token = await self._token(client, env)
            config = await self._get(client, env, token, name, version)
        self.logger.debug("config_service.fetched", env=env.value, name=name, version=version)
        return config

    async def current_version(self, env: Env, name: str) -> int:
        config = await self.get_config(env, name, "current")
        return int(config["configurationVersion"])

    @remote_call
    async def validate_update(self, env: Env, name: str, payload: dict) -> dict:
        async with self._client() as client:
            token = await self._token(client, env)
            result = await self._post(client, env, token, name, payload, validate_only=True)
        self.logger.debug("config_service.validated", env=env.value, name=name)
        return result

    @remote_call
    async def commit_update(self, env: Env, name: str, payload: dict) -> int:
        """Commit ``payload`` and return the new configuration version."""
        async with self._client() as client:
            token = await self._token(client, env)
            result = await self._post(client, env, token, name, payload, validate_only=False)
        version = int(result["configurationVersion"])
        self.logger.info("config_service.committed", env=env.value, name=name, version=version)
        return version

    @remote_call
    async def rollback_to_version(self, env: Env, name: str, version: int) -> int:
        """
        Re-commit the content of ``version``.

        Refused when the live version is more than one ahead of ``version``:
        somebody else has written since our change and rolling back would
        discard their work.
        """
        async with self._client() as client:
            token = await self._token(client, env)
            current = await self._get(client, env, token, name, "current")
            if int(current["configurationVersion"]) - version > 1:
                raise StaleStateError(
                    f"Configuration {name} is outdated on {env.value.upper()}",
                    409,
                    remote_system=self.system.value,
                )
            target = await self._get(client, env, token, name, version)
            payload = build_update(target, target.get("configurationValue"), comment=f"Rollback to version {version}")
            result = await self._post(client, env, token, name, payload, validate_only=False)
        new_version = int(result["configurationVersion"])
        self.logger.info(
            "config_service.rolled_back",
            env=env.value,
            name=name,
            restored_version=version,
            version=new_version,
        )
        return new_version
