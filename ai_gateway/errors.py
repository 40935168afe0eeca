"""
Gateway Exceptions
==================

All exceptions raised inside the gateway inherit from GatewayError so callers
can catch the whole family at once. Only NoAvailableProvider and
UnknownPlatformError ever end a request; everything else is recovered by the
component that raised it or by the fallback chain.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    pass


class ClassificationError(GatewayError):
    """Learned classifier failed or timed out (recovered by the rule engine)"""

    pass


class NoAvailableProvider(GatewayError):
    """No provider passed availability filtering"""

    def __init__(self, domain: str = "", attempted: list[str] | None = None):
        self.domain = domain
        self.attempted = list(attempted or [])
        msg = "No available platforms for request"
        if domain:
            msg += f" (domain: {domain})"
        if self.attempted:
            msg += f"; already attempted: {', '.join(self.attempted)}"
        super().__init__(msg)


class UnknownPlatformError(GatewayError):
    """Platform name is not in the registry"""

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unknown platform: '{platform}'")


class ProviderError(GatewayError):
    """
    Transport, auth or quota failure from a vendor call.

    retryable errors are retried inside the adapter first; once surfaced to
    the orchestrator any ProviderError triggers the fallback chain.
    """

    def __init__(
        self,
        message: str,
        *,
        platform: str = "",
        status_code: int | None = None,
        retryable: bool = False,
        fallback_recommendation: list[str] | None = None,
    ):
        self.platform = platform
        self.status_code = status_code
        self.retryable = retryable
        self.fallback_recommendation = list(fallback_recommendation or [])
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"ProviderError(platform={self.platform!r}, "
            f"status_code={self.status_code}, retryable={self.retryable})"
        )


class SynthesisError(GatewayError):
    """Malformed provider payload (recovered by degrading to raw text)"""

    pass


class PersistenceError(GatewayError):
    """Context store read or write failure"""

    pass
