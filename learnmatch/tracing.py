import os
from typing import Any

from ddtrace.trace import tracer


def tracing_enabled() -> bool:
    return os.getenv("DD_TRACE_ENABLED", "false").lower() in ("true", "1")


def configure_tracing():
    # Disabled unless explicitly requested
    tracer.enabled = tracing_enabled()


def tag_current_span(**tags: Any) -> None:
    """Attach tags to the active span, numbers are recorded as metrics."""
    span = tracer.current_span()
    if span is None:
        return
    for key, value in tags.items():
        if value is None:
            continue
        if isinstance(value, int | float) and not isinstance(value, bool):
            span.set_metric(key, value)
        else:
            span.set_tag(key, str(value))
