"""
CI webhook payload handling.

The CI system posts ``{"build": {"key": "...", "status": "SUCCESS"}}`` when
a validation build finishes. Anything else is acknowledged and ignored so
the CI system never retries a delivery into duplicate side effects.
"""

from dataclasses import asdict, dataclass
from typing import Any

SUCCESS = "SUCCESS"


@dataclass
class WebhookResult:
    status: str  # processed | ignored
    build_key: str | None = None
    outcome: str | None = None
    reason: str | None = None
    store_code: str | None = None
    entity_code: str | None = None
    entity_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def parse_payload(body: Any) -> tuple[str, str] | None:
    """Extract ``(build_key, outcome)`` or None for a malformed payload."""
    if not isinstance(body, dict):
        return None
    build = body.get("build")
    if not isinstance(build, dict):
        return None
    key = build.get("key")
    outcome = build.get("status") or build.get("state")
    if not isinstance(key, str) or not key.strip():
        return None
    if not isinstance(outcome, str) or not outcome.strip():
        return None
    return key.strip(), outcome.strip().upper()


def is_success(outcome: str) -> bool:
    return outcome.upper() == SUCCESS
