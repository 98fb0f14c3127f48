"""Error types raised inside the provider layer."""

from __future__ import annotations

from chatdesk.types import Provider


class ProviderError(Exception):
    """A provider reported an application-level failure in its payload.

    Raised while mapping frames and converted to an ``error`` stream event
    at the adapter boundary.  Never retried.
    """

    def __init__(self, provider: Provider, message: str) -> None:
        super().__init__(f"{provider.value}: {message}")
        self.provider = provider
        self.detail = message
