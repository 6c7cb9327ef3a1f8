"""Exceptions raised by the billing core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents an actionable billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    @property
    def retryable(self) -> bool:
        return False

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class BillingRequestError(BillingError):
    """The caller asked for something that cannot be done; nothing was changed."""


@dataclass
class BillingNotFoundError(BillingError):
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class BillingForbiddenError(BillingError):
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class BillingConflictError(BillingError):
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class ProviderTransientError(BillingError):
    """Network failure, rate limit, or 5xx from the billing provider."""

    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE

    @property
    def retryable(self) -> bool:
        return True


@dataclass
class ProviderTerminalError(BillingError):
    """The provider rejected the request and retrying will not help."""

    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass
class PriceInactiveError(ProviderTerminalError):
    """The referenced provider price is archived; callers re-create it."""


@dataclass
class WebhookSignatureError(BillingError):
    """Inbound webhook failed authenticity checks."""


@dataclass
class LedgerEntryNotFoundError(BillingError):
    """A provider event refers to a ledger entry that does not exist yet."""

    status_code: int = status.HTTP_404_NOT_FOUND


__all__ = [
    "BillingConflictError",
    "BillingError",
    "BillingForbiddenError",
    "BillingNotFoundError",
    "BillingRequestError",
    "LedgerEntryNotFoundError",
    "PriceInactiveError",
    "ProviderTerminalError",
    "ProviderTransientError",
    "WebhookSignatureError",
]
