"""Error taxonomy for the import pipeline and the match engine.

Per-row and per-name errors are recovered where they happen (recorded,
counted, execution continues). Stage and run level errors propagate to the
executor, which finalizes the stage row and marks the run failed.
"""

from __future__ import annotations

from typing import Any


class PipelineError(RuntimeError):
    """Base error carrying a stable machine-readable `code`."""

    default_code = "pipeline_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.meta = dict(meta or {})

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "meta": self.meta}


class ValidationError(PipelineError):
    """Bad input shape; raised before any side effect."""

    default_code = "validation_error"


class InvalidName(ValidationError):
    """Counterparty name cannot be a registered organisation.

    `code` is the reason (e.g. ``purely_numeric``) and is stored on the record.
    """

    default_code = "invalid_name"


class RegistryUnavailable(PipelineError):
    """Transient registry failure after retries; the name stays pending."""

    default_code = "registry_unavailable"


class RegistryRequestError(PipelineError):
    """Non-retryable registry response (4xx other than 429)."""

    default_code = "registry_request_error"


class AmbiguousDuplicate(PipelineError):
    """Two entities already on file both plausibly match; needs a human."""

    default_code = "ambiguous_duplicate"


class ConstraintViolation(PipelineError):
    """A write hit a uniqueness constraint; converted into the merge workflow."""

    default_code = "constraint_violation"


class StageFatal(PipelineError):
    """Whole-stage failure (store unreachable, unreadable asset, ...)."""

    default_code = "stage_fatal"


class RunCancelled(PipelineError):
    """The run's cancel event was set; raised at a row or stage boundary."""

    default_code = "cancelled"
