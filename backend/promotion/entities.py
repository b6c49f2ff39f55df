"""
Promotable entity variants and their remote behaviour.

Plans, offers, retention offers and extension offers share one table and
one lifecycle; what differs is the remote mutation each performs when it
enters an environment and how that mutation is reverted. Each variant
registers an ``EntityHandler`` keyed by ``EntityType``:

  plan              ensure billing plan / deactivate it
  offer             ensure billing coupon / deactivate it
  retention_offer   coupon plus optional upgrade coupon / deactivate both
  extension_offer   no billing object (cache clear only)

Usage:
    handler = get_handler(EntityType(entity.entity_type), billing)
    remote_id = await handler.apply(entity, Env.STG)
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from db.models import PromotableEntity
from integrations.base import Env
from integrations.billing import BillingClient

# Payload keys that are OfferOps bookkeeping, never sent to billing.
LOCAL_ONLY_KEYS = frozenset({"upgrade_offer_code", "bulk", "notes"})


class EntityType(str, Enum):
    PLAN = "plan"
    OFFER = "offer"
    RETENTION_OFFER = "retention_offer"
    EXTENSION_OFFER = "extension_offer"


def _billing_fields(entity: PromotableEntity) -> dict[str, Any]:
    return {k: v for k, v in (entity.payload or {}).items() if k not in LOCAL_ONLY_KEYS}


class EntityHandler(ABC):
    """Remote side effects of one entity variant."""

    entity_type: EntityType
    touches_billing = True

    def __init__(self, billing: BillingClient):
        self.billing = billing

    @abstractmethod
    async def apply(self, entity: PromotableEntity, env: Env) -> str | None:
        """Create the variant's remote artifacts on ``env``; returns the remote id."""

    @abstractmethod
    async def revert(self, entity: PromotableEntity, env: Env) -> None:
        """Remove what ``apply`` created. Must be safe to call repeatedly."""


_HANDLER_REGISTRY: dict[EntityType, type[EntityHandler]] = {}


def register_handler(handler_cls: type[EntityHandler]):
    """Decorator: register a handler class for its entity type."""
    _HANDLER_REGISTRY[handler_cls.entity_type] = handler_cls
    return handler_cls


def get_handler(entity_type: EntityType | str, billing: BillingClient) -> EntityHandler:
    handler_cls = _HANDLER_REGISTRY.get(EntityType(entity_type))
    if handler_cls is None:
        raise ValueError(f"No handler registered for entity type: {entity_type}")
    return handler_cls(billing)


# ── Variants ──────────────────────────────────────────────────────────────


@register_handler
class PlanHandler(EntityHandler):
    entity_type = EntityType.PLAN

    async def apply(self, entity: PromotableEntity, env: Env) -> str | None:
        plan = {"code": entity.entity_code, "name": entity.name or entity.entity_code, **_billing_fields(entity)}
        created = await self.billing.ensure_plan(entity.store, env, plan)
        return created.get("id")

    async def revert(self, entity: PromotableEntity, env: Env) -> None:
        await self.billing.deactivate_plan(entity.store, env, entity.entity_code)


@register_handler
class OfferHandler(EntityHandler):
    entity_type = EntityType.OFFER

    def coupon(self, entity: PromotableEntity, code: str | None = None, name: str | None = None) -> dict:
        coupon = {
            "code": code or entity.entity_code,
            "name": name or entity.name or entity.entity_code,
            **_billing_fields(entity),
        }
        if entity.plan_code:
            coupon.setdefault("applies_to_all_plans", False)
            coupon.setdefault("plan_codes", [entity.plan_code])
        return coupon

    async def apply(self, entity: PromotableEntity, env: Env) -> str | None:
        created = await self.billing.ensure_coupon(entity.store, env, self.coupon(entity))
        return created.get("id")

    async def revert(self, entity: PromotableEntity, env: Env) -> None:
        await self.billing.deactivate_coupon(entity.store, env, entity.entity_code)


@register_handler
class RetentionOfferHandler(OfferHandler):
    """Retention offers may carry a second coupon used when the member upgrades."""

    entity_type = EntityType.RETENTION_OFFER

    def upgrade_code(self, entity: PromotableEntity) -> str | None:
        return (entity.payload or {}).get("upgrade_offer_code")

    async def apply(self, entity: PromotableEntity, env: Env) -> str | None:
        remote_id = await super().apply(entity, env)
        upgrade_code = self.upgrade_code(entity)
        if upgrade_code:
            name = f"{entity.name or entity.entity_code} (upgrade)"
            await self.billing.ensure_coupon(entity.store, env, self.coupon(entity, upgrade_code, name))
        return remote_id

    async def revert(self, entity: PromotableEntity, env: Env) -> None:
        upgrade_code = self.upgrade_code(entity)
        if upgrade_code:
            await self.billing.deactivate_coupon(entity.store, env, upgrade_code)
        await super().revert(entity, env)


@register_handler
class ExtensionOfferHandler(EntityHandler):
    entity_type = EntityType.EXTENSION_OFFER
    touches_billing = False

    async def apply(self, entity: PromotableEntity, env: Env) -> str | None:
        return None

    async def revert(self, entity: PromotableEntity, env: Env) -> None:
        return None
