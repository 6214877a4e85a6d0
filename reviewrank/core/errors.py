"""Exception taxonomy for the review pipeline.

Unresolved identities and duplicate reviews are routine outcomes and are counted,
never raised. Everything here is a real failure that some layer has to absorb.
"""

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class TransientSourceFailure(PipelineError):
    """Raised when the scrape provider times out, rate limits or answers with a 5xx."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceRequestError(PipelineError):
    """Raised for provider responses that will not succeed on retry (unknown place id, 4xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceFailure(PipelineError):
    """Raised when a single store write fails."""


class ConfigurationFailure(PipelineError):
    """Raised when mandatory configuration is missing or malformed."""


ConfigError = ConfigurationFailure
