"""Cross-cutting primitives: errors, logging, settings."""

from chicon.core.errors import EngineError, ErrorCategory, is_retryable
from chicon.core.logging import bind_context, configure_logging, get_logger, unbind_context
from chicon.core.settings import RunnerSettings, load_settings

__all__ = [
    "EngineError",
    "ErrorCategory",
    "RunnerSettings",
    "bind_context",
    "configure_logging",
    "get_logger",
    "is_retryable",
    "load_settings",
    "unbind_context",
]
