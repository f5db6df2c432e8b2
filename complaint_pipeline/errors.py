"""Exception types shared across the pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


# ---------------------------------------------------------------------------
# Inference errors, classified the way the retry policy needs them
# ---------------------------------------------------------------------------

class InferenceError(PipelineError):
    """An external inference call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(InferenceError):
    """429-class response. Retried after a fixed cooldown."""


class TransientServerError(InferenceError):
    """5xx-class response, timeout or dropped connection. Retried with backoff."""


class PermanentInferenceError(InferenceError):
    """Any other failure. Never retried."""


# ---------------------------------------------------------------------------
# Job and caller errors
# ---------------------------------------------------------------------------

class InvalidParametersError(PipelineError, ValueError):
    """Job parameters failed validation. No job is created."""


class UnknownStageError(PipelineError, KeyError):
    def __init__(self, stage: str):
        super().__init__(stage)
        self.stage = stage

    def __str__(self) -> str:
        return f"Unknown pipeline stage '{self.stage}'"


class JobNotFoundError(PipelineError, LookupError):
    pass


class StoreError(PipelineError):
    """The persistent store rejected or failed a request."""
