from __future__ import annotations


class ThunderheadError(Exception):
    """Base class for failures raised by the risk core."""

    retryable = False


class NetworkError(ThunderheadError):
    """Timeout, transport failure or HTTP 5xx from the atmospheric provider."""

    retryable = True


class UpstreamRejectedError(ThunderheadError):
    """HTTP 4xx from the atmospheric provider. Retrying will not help."""

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"provider rejected request: {status_code} {detail}".strip())
        self.status_code = status_code


class ParseError(ThunderheadError):
    """Provider payload did not have the expected shape (upstream contract drift)."""


class DegenerateInputError(ThunderheadError, ValueError):
    """Projection is undefined for the input, e.g. east/west offsets at a pole."""


class CacheStoreError(ThunderheadError):
    """The cache persistence collaborator failed."""
