"""
Billing Provider Client

Creates and deactivates plans and coupons on the billing provider's v3
REST API. Every store has its own provider site per environment; the site
subdomain and an encrypted API key live on the ``stores`` row.

Creates are create-if-absent (GET by code first) and deactivations treat
404 as already done, so a retried promotion or rollback never produces
duplicate remote side effects.
"""

from typing import Any

import httpx

from core.config import get_settings
from core.errors import ValidationError
from core.retry import remote_call
from core.security import decrypt
from db.models import Store
from integrations.base import Env, RemoteClient, RemoteSystem

settings = get_settings()


class BillingClient(RemoteClient):
    """Client for billing-provider plan and coupon operations."""

    system = RemoteSystem.BILLING

    def credentials(self, store: Store, env: Env) -> tuple[str, str]:
        """Resolve (site subdomain, API key) for the store on ``env``."""
        if env == Env.PROD:
            subdomain, encrypted = store.billing_subdomain_prod, store.billing_api_key_prod_encrypted
        elif env == Env.STG:
            subdomain, encrypted = store.billing_subdomain_stg, store.billing_api_key_stg_encrypted
        else:
            raise ValidationError(f"Billing has no {env.value.upper()} site", 406)
        if not subdomain or not encrypted:
            raise ValidationError(
                f"Store {store.store_code} has no billing credentials on {env.value.upper()}",
                406,
                remote_system=self.system.value,
            )
        return subdomain, decrypt(encrypted)

    def _site_client(self, store: Store, env: Env) -> httpx.AsyncClient:
        subdomain, api_key = self.credentials(store, env)
        return self._client(
            base_url=f"{settings.billing_api_url}/sites/subdomain-{subdomain}",
            auth=(api_key, ""),
            headers={
                "Accept": settings.billing_api_version,
                "Content-Type": "application/json",
            },
        )

    async def _get_or_none(self, client: httpx.AsyncClient, path: str) -> dict | None:
        response = await client.get(path)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def _delete_if_present(self, client: httpx.AsyncClient, path: str) -> bool:
        response = await client.delete(path)
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    # ── Plans ─────────────────────────────────────────────────────────────

    @remote_call
    async def ensure_plan(self, store: Store, env: Env, plan: dict[str, Any]) -> dict:
        """Create the plan unless a plan with its code already exists."""
        code = plan["code"]
        async with self._site_client(store, env) as client:
            existing = await self._get_or_none(client, f"/plans/code-{code}")
            if existing is not None:
                self.logger.info("billing.plan.exists", env=env.value, plan_code=code)
                return existing
            response = await client.post("/plans", json=plan)
            response.raise_for_status()
            self.logger.info("billing.plan.created", env=env.value, plan_code=code)
            return response.json()

    @remote_call
    async def deactivate_plan(self, store: Store, env: Env, plan_code: str) -> bool:
        async with self._site_client(store, env) as client:
            removed = await self._delete_if_present(client, f"/plans/code-{plan_code}")
        self.logger.info("billing.plan.deactivated", env=env.value, plan_code=plan_code, existed=removed)
        return removed

    # ── Coupons ───────────────────────────────────────────────────────────

    @remote_call
    async def ensure_coupon(self, store: Store, env: Env, coupon: dict[str, Any]) -> dict:
        """Create the coupon unless a coupon with its code already exists."""
        code = coupon["code"]
        async with self._site_client(store, env) as client:
            existing = await self._get_or_none(client, f"/coupons/code-{code}")
            if existing is not None and existing.get("state") != "expired":
                self.logger.info("billing.coupon.exists", env=env.value, coupon_code=code)
                return existing
            response = await client.post("/coupons", json=coupon)
            response.raise_for_status()
            self.logger.info("billing.coupon.created", env=env.value, coupon_code=code)
            return response.json()

    @remote_call
    async def deactivate_coupon(self, store: Store, env: Env, coupon_code: str) -> bool:
        async with self._site_client(store, env) as client:
            removed = await self._delete_if_present(client, f"/coupons/code-{coupon_code}")
        self.logger.info("billing.coupon.deactivated", env=env.value, coupon_code=coupon_code, existed=removed)
        return removed

    @remote_call
    async def list_unique_codes(self, store: Store, env: Env, coupon_code: str) -> list[dict]:
        """Fetch every generated unique code of a bulk coupon, following pagination."""
        codes: list[dict] = []
        path: str | None = f"/coupons/code-{coupon_code}/unique_coupon_codes"
        params: dict[str, Any] | None = {"limit": 200}
        async with self._site_client(store, env) as client:
            while path:
                response = await client.get(path, params=params)
                response.raise_for_status()
                body = response.json()
                codes.extend(body.get("data", []))
                path = body.get("next") if body.get("has_more") else None
                params = None  # ``next`` already carries the cursor
        return codes
