"""
CI Validation Pipeline Client

Queues an end-to-end validation build for a promoted entity. The CI system
reports the result later through the signed webhook; the ``buildResultKey``
returned here is the correlation token stored on the entity.

Contention and maintenance windows are expected and surfaced distinctly:
  - 400 "maximum number of concurrent builds"  -> RemoteBusyError
  - 503                                         -> TransientTransportError
"""

import httpx

from core.config import get_settings
from core.errors import RemoteBusyError, TransientTransportError, wrap_remote_error
from integrations.base import Env, RemoteClient, RemoteSystem

settings = get_settings()

CONCURRENT_BUILDS_MARKER = "maximum number of concurrent builds"


def offers_url(env: Env, region_code: str) -> str:
    site = settings.offers_site_prod if env == Env.PROD else settings.offers_site_stg
    return f"{site.rstrip('/')}/{region_code.lower()}/en/offers?optly=false"


class CIPipelineClient(RemoteClient):
    system = RemoteSystem.CI

    async def trigger_build(
        self,
        *,
        env: Env,
        entity_type: str,
        code: str,
        region_code: str,
    ) -> dict:
        params = {
            "bamboo.variable.OFFERS_URL": offers_url(env, region_code),
            "bamboo.variable.OFFER_TYPE": entity_type,
            "bamboo.variable.PROMO_CODE": code,
            "bamboo.variable.VALDN_ENV": env.value,
        }
        self.logger.info("ci.build.triggering", env=env.value, code=code)
        try:
            return await self.retry_policy.call(self._queue_build, params)
        except httpx.HTTPStatusError as exc:
            raise self._classify(exc, env, code) from exc

    async def _queue_build(self, params: dict[str, str]) -> dict:
        async with self._client(auth=(settings.ci_svc_user_id, settings.ci_svc_user_pwd)) as client:
            response = await client.post(
                settings.ci_rest_endpoint,
                params=params,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            return response.json()

    def _classify(self, exc: httpx.HTTPStatusError, env: Env, code: str):
        status = exc.response.status_code
        if status == 400 and CONCURRENT_BUILDS_MARKER in exc.response.text:
            self.logger.warning("ci.build.busy", env=env.value, code=code)
            return RemoteBusyError(
                f"Another entity on {env.value.upper()} is being validated, please try again in a few minutes.",
                remote_system=self.system.value,
            )
        if status == 503:
            self.logger.warning("ci.build.offline", env=env.value, code=code)
            return TransientTransportError(
                f"{env.value.upper()} CI may be down for scheduled maintenance. Please retry later.",
                remote_system=self.system.value,
            )
        self.logger.error("ci.build.failed", env=env.value, code=code, status=status)
        return wrap_remote_error(exc, self.system.value, context=f"Failed to trigger build for {code}")
