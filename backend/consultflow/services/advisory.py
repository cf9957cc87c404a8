"""
Advisory side-effect runner.

Calendar staging, receipt/cancellation emails, analytics and PDF rendering
must never undo or block an authoritative write. They go through
``run_advisory``; authoritative calls are made directly so their errors
propagate.
"""

import logging
from typing import Any, Callable, Mapping, Optional, TypeVar

from ..core.exceptions import ConsistencyViolation
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..monitoring.sentry import capture_tagged_exception, capture_tagged_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_advisory(
    stage: str,
    fn: Callable[..., T],
    *args: Any,
    default: Optional[T] = None,
    context: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> Optional[T]:
    """Call ``fn``; on failure log, report and return ``default``."""
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        logger.warning(
            "Advisory step %s failed: %s",
            stage,
            exc,
            extra={"stage": stage, **dict(context or {})},
            exc_info=True,
        )
        capture_tagged_exception(exc, stage=stage, context=context)
        prometheus_metrics.inc_advisory_failure(stage)
        return default


def report_consistency_violation(violation: ConsistencyViolation, *, stage: str) -> None:
    logger.warning(
        "Consistency violation in %s: %s",
        stage,
        violation.message,
        extra={"stage": stage, **violation.context},
    )
    capture_tagged_message(violation.message, stage=stage, context=violation.context)
