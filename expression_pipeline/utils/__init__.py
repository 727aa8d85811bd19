"""Utility modules for the expression pipeline."""

from .base_agent import BaseAgent
from .concurrency import CancellationToken
from .errors import (
    ConfigurationError,
    ExternalLookupError,
    InputError,
    NumericalError,
    PipelineCancelled,
    PipelineError,
    ResourceError,
)

__all__ = [
    "BaseAgent",
    "CancellationToken",
    "PipelineError",
    "InputError",
    "ConfigurationError",
    "NumericalError",
    "ExternalLookupError",
    "ResourceError",
    "PipelineCancelled",
]
