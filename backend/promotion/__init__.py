"""
Promotion of plans and offers across draft, staging and production.

Usage:
    machine = PromotionStateMachine(
        AsyncSessionLocal,
        billing=BillingClient(),
        cache=ContentCacheClient(),
        ci=CIPipelineClient(),
    )
    entity = await machine.promote("flex-us", "SPRING24")
    entity = await machine.start_validation("flex-us", "SPRING24")
"""

from promotion.entities import EntityType, get_handler, register_handler
from promotion.state_machine import PromotionStateMachine
from promotion.status import Status, target_env
from promotion.webhook import WebhookResult

__all__ = [
    "EntityType",
    "PromotionStateMachine",
    "Status",
    "WebhookResult",
    "get_handler",
    "register_handler",
    "target_env",
]
