"""
Typed failures raised by the compile, generation and matching services.

Every error carries a human-readable ``message``; ``status_code`` is the HTTP
status the API layer maps it to (see the handlers in ``app.main``).
"""
from __future__ import annotations

from typing import Optional

from fastapi import status


class DocForgeError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(DocForgeError):
    """A referenced template, document, customer, artifact or job does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class NoContext(DocForgeError):
    """No assistant workspace could be resolved for the request."""

    status_code = status.HTTP_400_BAD_REQUEST


class EmptyGeneration(DocForgeError):
    """The assistant answered, but nothing usable could be parsed from it."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class GenerationFailed(DocForgeError):
    """A compiled generator raised, timed out, or produced no output."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class UpstreamUnavailable(DocForgeError):
    """The external assistant could not be reached or returned a server error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PartialUnitFailure(DocForgeError):
    """One unit inside a batch failed; recorded on the job, never raised past the batch."""

    def __init__(self, message: str, unit_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.unit_id = unit_id
