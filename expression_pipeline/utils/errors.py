"""
Pipeline error taxonomy.

Every error names the stage that raised it and the contract that was
violated, so a failed run always tells the caller where and why.

- InputError: malformed matrix, label mismatch, group too small (fatal)
- ConfigurationError: invalid parameter combination (fatal, raised at start)
- NumericalError: degenerate feature/module (recovered locally by the stage)
- ExternalLookupError: gene-set or identifier source unavailable (isolated)
- ResourceError: candidate set above the dense ceiling (fatal unless fallback)
- PipelineCancelled: cooperative cancellation or timeout (fatal)
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "PipelineError"

    def __init__(self, detail: str, stage: Optional[str] = None):
        self.detail = detail
        self.stage = stage or "pipeline"
        super().__init__(f"[{self.stage}] {self.kind}: {detail}")


class InputError(PipelineError):
    kind = "InputError"


class ConfigurationError(PipelineError):
    kind = "ConfigurationError"


class NumericalError(PipelineError):
    kind = "NumericalError"


class ExternalLookupError(PipelineError):
    kind = "ExternalLookupError"


class ResourceError(PipelineError):
    kind = "ResourceError"


class PipelineCancelled(PipelineError):
    kind = "PipelineCancelled"
