"""Analytics sink that emits lifecycle events as structured log records."""

from __future__ import annotations

import logging
from typing import Any, Mapping

logger = logging.getLogger("consultflow.analytics")


class LogAnalyticsSink:
    def track(self, event: str, distinct_id: str, properties: Mapping[str, Any]) -> None:
        logger.info(
            event,
            extra={"event": event, "distinct_id": distinct_id, "properties": dict(properties)},
        )
