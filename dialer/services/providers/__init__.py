"""Voice provider outbound call clients."""

from dialer.services.providers.base import (
    BaseCallProvider,
    OutboundCallRequest,
    OutboundCallResult,
    is_transient_error,
)
from dialer.services.providers.registry import ProviderRegistry, provider_registry

__all__ = [
    "BaseCallProvider",
    "OutboundCallRequest",
    "OutboundCallResult",
    "ProviderRegistry",
    "is_transient_error",
    "provider_registry",
]
