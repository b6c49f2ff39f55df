"""
Entity lifecycle statuses.

Numeric ordering is meaningful: a higher value is always further along,
and the band a value falls in decides which environment it lives in.
"""

from enum import IntEnum

from core.errors import ValidationError
from integrations.base import Env

STG_THRESHOLD = 10
PROD_THRESHOLD = 60


class Status(IntEnum):
    DRAFT = 1

    STG_CREATE_FAILED = 10
    STG_PENDING = 20
    STG_VALIDATING = 30
    STG_VALIDATION_FAILED = 33
    STG_VALID = 36
    STG_RETIRED = 40
    STG_ROLLBACK_FAILED = 45
    APPROVAL_PENDING = 50
    APPROVED = 56

    PROD_PENDING = 70
    PROD_VALIDATING = 80
    PROD_VALIDATION_FAILED = 83
    PROD_VALID = 86
    PROD_RETIRED = 90
    PROD_ROLLBACK_FAILED = 95
    PROD_FAILED = 97


VALIDATABLE = frozenset(
    {
        Status.STG_PENDING,
        Status.STG_VALIDATION_FAILED,
        Status.PROD_PENDING,
        Status.PROD_VALIDATION_FAILED,
    }
)

PROMOTABLE_TO_PROD = frozenset({Status.STG_VALID, Status.APPROVED})

# Per-environment outcome of each lifecycle phase.
_PHASES: dict[Env, dict[str, Status]] = {
    Env.STG: {
        "pending": Status.STG_PENDING,
        "validating": Status.STG_VALIDATING,
        "valid": Status.STG_VALID,
        "validation_failed": Status.STG_VALIDATION_FAILED,
        "rollback_failed": Status.STG_ROLLBACK_FAILED,
        "retired": Status.STG_RETIRED,
    },
    Env.PROD: {
        "pending": Status.PROD_PENDING,
        "validating": Status.PROD_VALIDATING,
        "valid": Status.PROD_VALID,
        "validation_failed": Status.PROD_VALIDATION_FAILED,
        "rollback_failed": Status.PROD_ROLLBACK_FAILED,
        "retired": Status.PROD_RETIRED,
    },
}


def target_env(status_id: int) -> Env:
    """Map a status value to the environment it belongs to."""
    status_id = int(status_id)
    if status_id >= PROD_THRESHOLD:
        return Env.PROD
    if status_id >= STG_THRESHOLD:
        return Env.STG
    if status_id >= Status.DRAFT:
        return Env.DB
    raise ValidationError(f"Status {status_id} does not map to an environment", 406)


def status_for(env: Env, phase: str) -> Status:
    try:
        return _PHASES[env][phase]
    except KeyError:
        raise ValidationError(f"No '{phase}' status on {env.value.upper()}", 406) from None


def next_promotion_env(status_id: int) -> Env | None:
    """Environment a promote call moves an entity into, or None if not promotable."""
    if status_id == Status.DRAFT:
        return Env.STG
    if status_id in PROMOTABLE_TO_PROD:
        return Env.PROD
    return None


def rollback_status(env: Env) -> Status:
    """Last stable status before the most recent promotion into ``env``."""
    return Status.STG_VALID if env == Env.PROD else Status.DRAFT


def status_name(status_id: int | None) -> str | None:
    if status_id is None:
        return None
    try:
        return Status(status_id).name
    except ValueError:
        return str(status_id)
