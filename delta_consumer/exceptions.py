"""Application-level exception types.

Convention:
- ``StoreError`` and subclasses: the triple store could not complete a query
  or update.  Only ``StoreUnavailableError`` (connection failure, timeout,
  HTTP 5xx) is considered transient and retried by the batched updater; a
  ``SparqlError`` means the store rejected the request and retrying cannot help.
  The global handler answers 503 for any ``StoreError`` reaching the HTTP layer.
- ``ProducerError``: the producer's discovery or download endpoints failed or
  returned something the consumer cannot interpret.
- ``ValueError`` subclasses: configuration or input problems that are safe to
  report to clients.  The global ``ValueError`` handler answers 422.

Pipeline entry points never let these escape to an HTTP caller: they log the
failure and persist it as an error resource in the jobs graph.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised when a SPARQL query or update fails."""


class StoreUnavailableError(StoreError):
    """Raised when the store could not be reached or answered with a server error."""


class SparqlError(StoreError):
    """Raised when the store rejected a query or update as invalid."""


class ProducerError(Exception):
    """Raised when the producer endpoints fail or return malformed data."""


class DownloadError(ProducerError):
    """Raised when a delta file or file body could not be downloaded and written."""


class WatermarkUnavailableError(Exception):
    """Raised when no previous sync task exists and no start timestamp is configured."""


class JobAlreadyRunningError(Exception):
    """Raised when a job is requested while another job of the same operation is busy."""

    def __init__(self, operation: str, job_uri: str | None = None) -> None:
        self.operation = operation
        self.job_uri = job_uri
        detail = f" ({job_uri})" if job_uri else ""
        super().__init__(f"A job for operation {operation} is already busy{detail}")


class InvalidTransitionError(Exception):
    """Raised when a file task sub-status is asked to move backwards."""


class UnsafePathError(ValueError):
    """Raised when a file URI resolves outside the configured file folder."""


class DispatchConfigError(ValueError):
    """Raised when a configured dispatch transform cannot be resolved."""
