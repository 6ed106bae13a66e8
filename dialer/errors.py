"""Dialer exceptions.

Services raise these; the API layer maps them onto HTTP status codes.
"""

from __future__ import annotations

from fastapi import HTTPException, status


class DialerError(Exception):
    """Base class for all dialer errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class CampaignNotFound(DialerError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, campaign_id: str = "") -> None:
        super().__init__("Campaign not found")
        self.campaign_id = campaign_id


class RecipientNotFound(DialerError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, recipient_id: str = "") -> None:
        super().__init__("Recipient not found")
        self.recipient_id = recipient_id


class InvalidCampaignState(DialerError):
    """The requested transition is not allowed from the campaign's status."""

    status_code = status.HTTP_400_BAD_REQUEST


class ValidationFailed(DialerError):
    status_code = status.HTTP_400_BAD_REQUEST


class ProviderConfigError(DialerError):
    """The workspace has no usable voice provider integration."""

    status_code = status.HTTP_400_BAD_REQUEST


class ProviderCallError(DialerError):
    """A voice provider rejected or failed an API request."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class StoreError(DialerError):
    """The backing database returned an error."""


def to_http_exception(exc: DialerError) -> HTTPException:
    """Convert a dialer error into the HTTPException a route should raise."""
    return HTTPException(status_code=exc.status_code, detail=exc.message or "Internal server error")
