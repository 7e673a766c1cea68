"""
nilgate error types.

Each failure mode carries a stable machine-readable ``code`` so callers
can decide what to do (reject, retry, surface to an operator) without
parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional


class NilGateError(Exception):
    """Base error for all nilgate operations."""

    code = "NILGATE_ERROR"

    def details(self) -> dict[str, Any]:
        return {}


# Input errors
class ValidationError(NilGateError):
    """Malformed or inconsistent input, rejected before any state change."""

    code = "VALIDATION_ERROR"


class NotFound(NilGateError):
    """Unknown deal, athlete, or attestation."""

    code = "NOT_FOUND"


# Lifecycle errors
class InvalidTransition(NilGateError):
    """State machine guard violation."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move deal from {current} to {target}")

    def details(self) -> dict[str, Any]:
        return {"current": self.current, "target": self.target}


class NonCompliant(NilGateError):
    """Compliance evaluation rejected the deal; it stays CREATED."""

    code = "NON_COMPLIANT"

    def __init__(self, missing: list[str], reasons: list[str]):
        self.missing = list(missing)
        self.reasons = list(reasons)
        summary = "; ".join(reasons) if reasons else ", ".join(missing)
        super().__init__(f"Deal is not compliant: {summary}")

    def details(self) -> dict[str, Any]:
        return {"missing": self.missing, "reasons": self.reasons}


# Payout errors
class NotReady(NilGateError):
    """Deal is not in a state that allows the requested step yet."""

    code = "NOT_READY"


class AlreadyPaid(NilGateError):
    """A payout already exists for this deal."""

    code = "ALREADY_PAID"


class PayoutFailed(NilGateError):
    """External transfer failed; the deal stays VERIFIED and may be retried."""

    code = "PAYOUT_FAILED"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        if self.cause is None:
            return {}
        return {"cause": f"{type(self.cause).__name__}: {self.cause}"}


class UpstreamTimeout(PayoutFailed):
    """A long-latency collaborator call exceeded its time bound."""

    code = "UPSTREAM_TIMEOUT"


# Collaborator errors
class UpstreamUnavailable(NilGateError):
    """Attestation store or chain-interaction collaborator is unreachable."""

    code = "UPSTREAM_UNAVAILABLE"


class UpstreamRejected(PayoutFailed):
    """A collaborator answered but refused the request."""

    code = "UPSTREAM_REJECTED"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"status_code": self.status_code} if self.status_code is not None else {}
