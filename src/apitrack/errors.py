"""Error taxonomy for apitrack."""

from __future__ import annotations


class InputError(ValueError):
    """Malformed endpoint definition, filter, or range. Raised before any I/O."""


class EndpointNotFound(InputError):
    def __init__(self, endpoint_id: str) -> None:
        super().__init__(f"endpoint_not_found:{endpoint_id}")
        self.endpoint_id = endpoint_id


class StoreError(RuntimeError):
    """A record read or write failed; the caller may retry."""

    retryable = True
