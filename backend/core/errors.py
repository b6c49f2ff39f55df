"""
OfferOps error taxonomy.

Every failure that leaves the promotion core is one of these kinds, so
callers (the HTTP layer, workers) branch on ``kind`` instead of sniffing
exception names or messages:

  validation        malformed input or disallowed transition (4xx, never retried)
  remote_busy       remote mutex / CI contention ("try again shortly")
  transient         transport failure that survived the retry policy (5xx)
  remote            unexpected remote-side failure (5xx, names the system)
  rollback_failed   compensation failed; operator attention required
  stale             cached version / lock no longer matches reality (4xx)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, NoReturn

import httpx
from sqlalchemy.exc import IntegrityError


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    REMOTE_BUSY = "remote_busy"
    TRANSIENT = "transient"
    REMOTE = "remote"
    ROLLBACK_FAILED = "rollback_failed"
    STALE = "stale"


class AppError(Exception):
    """Base class for every error surfaced to operators."""

    kind: ErrorKind = ErrorKind.REMOTE
    default_status = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        remote_system: str | None = None,
        data: dict[str, Any] | None = None,
    ):
        super().__init__(message or "Something went wrong")
        self.message = message or "Something went wrong"
        self.status_code = status_code or self.default_status
        self.remote_system = remote_system
        self.data = data or {}

    @property
    def status(self) -> str:
        return "fail" if str(self.status_code).startswith("4") else "error"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.remote_system:
            body["remote_system"] = self.remote_system
        if self.data:
            body["data"] = self.data
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    default_status = 406


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_status = 404


class RemoteBusyError(AppError):
    kind = ErrorKind.REMOTE_BUSY
    default_status = 409


class TransientTransportError(AppError):
    kind = ErrorKind.TRANSIENT
    default_status = 503


class RemoteOperationError(AppError):
    kind = ErrorKind.REMOTE
    default_status = 500


class StaleStateError(AppError):
    kind = ErrorKind.STALE
    default_status = 409


class RollbackFailedError(AppError):
    """Compensation failed; the remote system needs manual cleanup."""

    kind = ErrorKind.ROLLBACK_FAILED
    default_status = 500
    requires_attention = True

    def __init__(
        self,
        message: str,
        *,
        original_error: str | None = None,
        rollback_error: str | None = None,
        remote_system: str | None = None,
        data: dict[str, Any] | None = None,
    ):
        payload = dict(data or {})
        payload.update(
            {
                "original_error": original_error,
                "rollback_error": rollback_error,
                "requires_attention": True,
            }
        )
        super().__init__(message, remote_system=remote_system, data=payload)
        self.original_error = original_error
        self.rollback_error = rollback_error


def wrap_remote_error(exc: BaseException, system: str, *, context: str = "") -> AppError:
    """
    Classify a raw collaborator exception once, at the state-machine boundary.

    Already-classified errors keep their kind and gain the remote system
    name when they had none.
    """
    prefix = f"{context}: " if context else ""
    if isinstance(exc, AppError):
        if exc.remote_system is None:
            exc.remote_system = system
        return exc
    if isinstance(exc, IntegrityError):
        return ValidationError(f"{prefix}record already exists ({exc.orig})", 406, remote_system=system)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = _response_detail(exc.response)
        if status == 401:
            return RemoteOperationError(
                f"{prefix}{system} rejected our credentials: {detail}", 401, remote_system=system
            )
        if 400 <= status < 500:
            return ValidationError(f"{prefix}{system} error: {detail}", 400, remote_system=system)
        return RemoteOperationError(f"{prefix}{system} error ({status}): {detail}", remote_system=system)
    if isinstance(exc, (httpx.TransportError,)):
        return TransientTransportError(f"{prefix}Connection error to {system}: {exc}", remote_system=system)
    return RemoteOperationError(
        f"{prefix}Internal server error. Please try again later. {system} error: {exc}",
        remote_system=system,
    )


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return response.reason_phrase


def raise_remote_error(exc: BaseException, system: str, *, context: str = "") -> NoReturn:
    """Re-raise ``exc`` classified; call from inside an ``except`` block."""
    error = wrap_remote_error(exc, system, context=context)
    if error is exc:
        raise error
    raise error from exc
