"""Exceptions raised by the gateway and adapters."""

from typing import Optional


class HydraError(Exception):
    """Base class for all relay errors."""


class NoCredentialError(HydraError):
    """The vault has no active key for a provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No active credential for {provider}")


class ProviderStreamError(HydraError):
    """A provider call failed to open or broke mid-stream."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            text = f"{provider} error ({status_code}): {message}"
        else:
            text = f"{provider} error: {message}"
        super().__init__(text)


class EmptyResponseError(ProviderStreamError):
    """The provider closed the stream without producing any chunk."""

    def __init__(self, provider: str):
        super().__init__(provider, "stream ended without output")
