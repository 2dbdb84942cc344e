"""Metrics and monitoring endpoints for the relay.

This module provides a Prometheus-compatible metrics endpoint covering
admission decisions, applied delays and relayed response statuses, plus
gauges read live from the admission controller.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from relay.app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@dataclass
class MetricsCollector:
    """Collects and stores relay metrics.

    Counters only; the gauges (stored clients, tracked hostnames, waiting
    requests) come from AdmissionController.get_stats() at scrape time.
    """

    _admitted: int = 0
    _total_delay_ms: int = 0
    _max_delay_ms: int = 0

    # Rejections by error code
    _rejections: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Responses by status code
    _responses: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    _start_time: float = field(default_factory=time.time)

    async def record_admission(self, delay_ms: int) -> None:
        async with self._lock:
            self._admitted += 1
            self._total_delay_ms += delay_ms
            if delay_ms > self._max_delay_ms:
                self._max_delay_ms = delay_ms

    async def record_rejection(self, error_code: str) -> None:
        async with self._lock:
            self._rejections[error_code] += 1

    async def record_response(self, status_code: int) -> None:
        async with self._lock:
            self._responses[status_code] += 1

    async def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all counters.

        Returns:
            Dictionary with metrics summary
        """
        async with self._lock:
            average = self._total_delay_ms / self._admitted if self._admitted else 0
            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "admitted_requests": self._admitted,
                "average_delay_ms": round(average, 2),
                "max_delay_ms": self._max_delay_ms,
                "rejections": dict(self._rejections),
                "responses": dict(self._responses),
            }

    async def get_prometheus_metrics(self, admission_stats: Optional[Dict[str, Any]] = None) -> str:
        """Get metrics in Prometheus text format.

        Args:
            admission_stats: Output of AdmissionController.get_stats()

        Returns:
            Prometheus-formatted metrics string
        """
        summary = await self.get_summary()
        admission_stats = admission_stats or {}
        lines = []

        lines.append("# HELP relay_admitted_requests_total Requests admitted for relaying")
        lines.append("# TYPE relay_admitted_requests_total counter")
        lines.append(f"relay_admitted_requests_total {summary['admitted_requests']}")

        lines.append("\n# HELP relay_delay_average_ms Average fairness delay applied")
        lines.append("# TYPE relay_delay_average_ms gauge")
        lines.append(f"relay_delay_average_ms {summary['average_delay_ms']}")

        lines.append("\n# HELP relay_delay_max_ms Largest fairness delay applied")
        lines.append("# TYPE relay_delay_max_ms gauge")
        lines.append(f"relay_delay_max_ms {summary['max_delay_ms']}")

        lines.append("\n# HELP relay_rejections_total Requests rejected by error code")
        lines.append("# TYPE relay_rejections_total counter")
        for code, count in sorted(summary["rejections"].items()):
            lines.append(f'relay_rejections_total{{error="{code}"}} {count}')

        lines.append("\n# HELP relay_responses_total Responses sent by status code")
        lines.append("# TYPE relay_responses_total counter")
        for status, count in sorted(summary["responses"].items()):
            lines.append(f'relay_responses_total{{status="{status}"}} {count}')

        lines.append("\n# HELP relay_stored_clients Client IPs with admission state")
        lines.append("# TYPE relay_stored_clients gauge")
        lines.append(f"relay_stored_clients {admission_stats.get('stored_clients', 0)}")

        lines.append("\n# HELP relay_stored_hostnames Hostnames with admission state")
        lines.append("# TYPE relay_stored_hostnames gauge")
        lines.append(f"relay_stored_hostnames {admission_stats.get('stored_hostnames', 0)}")

        lines.append("\n# HELP relay_active_requests Reservations currently held")
        lines.append("# TYPE relay_active_requests gauge")
        lines.append(f"relay_active_requests {admission_stats.get('active_requests', 0)}")

        lines.append("\n# HELP relay_waiting_requests Requests sleeping before relay")
        lines.append("# TYPE relay_waiting_requests gauge")
        lines.append(f"relay_waiting_requests {admission_stats.get('waiting', 0)}")

        lines.append("\n# HELP relay_uptime_seconds Relay uptime in seconds")
        lines.append("# TYPE relay_uptime_seconds gauge")
        lines.append(f"relay_uptime_seconds {summary['uptime_seconds']}")

        return "\n".join(lines) + "\n"


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(request: Request) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint."""
    collector: MetricsCollector = request.app.state.metrics
    content = await collector.get_prometheus_metrics(request.app.state.admission.get_stats())
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


class MetricsMiddleware:
    """Records the status of every response sent.

        Example:
            app.add_middleware(MetricsMiddleware, collector=collector)
    """

    def __init__(self, app, collector: MetricsCollector):
        self.app = app
        self.collector = collector

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def wrapped_send(message):
            if message["type"] == "http.response.start":
                await self.collector.record_response(message.get("status", 200))
            await send(message)

        await self.app(scope, receive, wrapped_send)
