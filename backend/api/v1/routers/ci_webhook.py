"""
CI Webhook Router — build results for validations started by OfferOps.

The CI system signs each delivery with HMAC-SHA256 over the raw body
(``x-ci-signature`` header). Malformed or unknown deliveries are answered
200 so the CI system never redelivers them.
"""

import json

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from api.deps import get_state_machine
from core.config import get_settings
from core.security import verify_webhook_signature
from promotion import PromotionStateMachine
from promotion.webhook import WebhookResult, parse_payload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ci", tags=["ci"])


@router.post("/webhook")
async def ci_webhook(
    request: Request,
    updated_by: str | None = Query(None, alias="updatedBy"),
    x_ci_signature: str | None = Header(None),
    machine: PromotionStateMachine = Depends(get_state_machine),
):
    body = await request.body()
    if not verify_webhook_signature(get_settings().ci_webhook_secret, body, x_ci_signature or ""):
        logger.warning("ci_webhook.bad_signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        parsed = parse_payload(json.loads(body or b"null"))
    except ValueError:
        parsed = None
    if parsed is None:
        logger.info("ci_webhook.ignored", reason="malformed_payload")
        return WebhookResult(status="ignored", reason="malformed_payload").to_dict()

    build_key, outcome = parsed
    result = await machine.on_validation_webhook(build_key, outcome, actor=updated_by or "ci")
    return result.to_dict()
