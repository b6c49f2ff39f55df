"""
Remote collaborator clients.

Every outbound system OfferOps writes to during promotion:
  - Billing provider     (plans, coupons, unique coupon codes)
  - Content cache        (cleared after each remote mutation)
  - CI pipeline          (asynchronous end-to-end validation)
  - Config service       (versioned configuration documents)

Usage:
    from integrations import BillingClient, Env

    billing = BillingClient()
    await billing.ensure_coupon(store, Env.STG, {"code": "SPRING24", ...})
"""

from integrations.base import Env, RemoteClient, RemoteSystem
from integrations.billing import BillingClient
from integrations.ci_pipeline import CIPipelineClient
from integrations.config_service import ConfigServiceClient
from integrations.content_cache import ContentCacheClient

__all__ = [
    "Env",
    "RemoteSystem",
    "RemoteClient",
    "BillingClient",
    "CIPipelineClient",
    "ConfigServiceClient",
    "ContentCacheClient",
]
