"""
Content Cache Client

After any remote mutation the storefront's content cache must be cleared
for the environment, otherwise the offers site keeps serving the previous
catalogue.
"""

from core.config import get_settings
from core.retry import remote_call
from integrations.base import Env, RemoteClient, RemoteSystem

settings = get_settings()


class ContentCacheClient(RemoteClient):
    system = RemoteSystem.CONTENT_CACHE

    def endpoint(self, env: Env) -> str:
        return settings.cache_api_prod if env == Env.PROD else settings.cache_api_stg

    @remote_call
    async def clear(self, env: Env) -> bool:
        """Clear the cache for ``env``. Returns False when no endpoint is configured."""
        url = self.endpoint(env)
        if not url:
            self.logger.info("cache.clear.skipped", env=env.value, reason="no_endpoint")
            return False
        headers = {"x-api-key": settings.cache_api_key} if settings.cache_api_key else {}
        async with self._client() as client:
            response = await client.post(url, json={}, headers=headers)
            response.raise_for_status()
        self.logger.info("cache.clear.completed", env=env.value)
        return True
