"""
Remote Collaborator Base

Every outbound system the promotion core talks to (billing provider,
content cache, CI pipeline, config service) is a ``RemoteClient`` so the
state machine can treat them uniformly: each call is retried by the shared
``RetryPolicy``, logged with the system name bound, and serialized per
environment by the remote mutex where it mutates state.
"""

from enum import Enum
from typing import Any

import httpx
import structlog

from core.retry import RetryPolicy

logger = structlog.get_logger()


# ── Environments and systems ──────────────────────────────────────────────


class Env(str, Enum):
    """Target environment tiers, in promotion order."""

    DB = "db"  # local draft database only
    STG = "stg"
    PROD = "prod"


class RemoteSystem(str, Enum):
    """Identifiers used as remote-lock keys and in error messages."""

    BILLING = "billing"
    CONTENT_CACHE = "content_cache"
    CI = "ci"
    CONFIG_SERVICE = "config_service"

    @property
    def label(self) -> str:
        return {
            RemoteSystem.BILLING: "Billing",
            RemoteSystem.CONTENT_CACHE: "Content Cache",
            RemoteSystem.CI: "CI Pipeline",
            RemoteSystem.CONFIG_SERVICE: "Config Service",
        }[self]


# ── Client base ───────────────────────────────────────────────────────────


class RemoteClient:
    """
    Base class for httpx-backed collaborator clients.

    ``transport`` lets tests inject ``httpx.MockTransport``; production
    code leaves it unset.
    """

    system: RemoteSystem

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._timeout = timeout
        self.logger = logger.bind(system=self.system.value)

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout, **kwargs)
