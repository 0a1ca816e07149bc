"""
payoutwatch/metrics.py

Prometheus metrics collection for payoutwatch.

Counts detector ticks by outcome, dispatched payouts and alert
deliveries, for monitoring the polling loop and the chat platform.
"""

import time
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger("payoutwatch.metrics")


class MetricsCollector:
    """
    Prometheus metrics collector for payoutwatch.

    Usage:
        metrics = MetricsCollector()
        detector = PayoutDetector(..., metrics=metrics)

        # Get metrics in Prometheus format
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "payoutwatch_polls_total": {
            "type": "counter",
            "help": "Detector ticks by outcome",
        },
        "payoutwatch_invalid_readings_total": {
            "type": "counter",
            "help": "Pool readings rejected by the validity gate",
        },
        "payoutwatch_oracle_failures_total": {
            "type": "counter",
            "help": "Ticks skipped because pool balances could not be read",
        },
        "payoutwatch_payouts_total": {
            "type": "counter",
            "help": "Payout cycles detected and dispatched",
        },
        "payoutwatch_deliveries_total": {
            "type": "counter",
            "help": "Alert deliveries by result",
        },
        "payoutwatch_last_payout_timestamp_seconds": {
            "type": "gauge",
            "help": "Unix time of the last dispatched payout",
        },
        "payoutwatch_uptime_seconds": {
            "type": "counter",
            "help": "Process uptime in seconds",
        },
    }

    def __init__(self, clock=time.time):
        self._clock = clock
        self._start_time = clock()

        # Counters (persist across collections)
        self._polls: Dict[str, int] = {}
        self._payouts = 0
        self._delivered = 0
        self._failed = 0
        self._last_payout_at: Optional[float] = None

    def record_poll(self, outcome: str) -> None:
        """Record one detector tick."""
        self._polls[outcome] = self._polls.get(outcome, 0) + 1

    def record_payout(self, observed_at: Optional[float] = None) -> None:
        self._payouts += 1
        self._last_payout_at = observed_at if observed_at is not None else self._clock()

    def record_deliveries(self, success: int, failed: int) -> None:
        """Record the result of one dispatch or update pass."""
        self._delivered += success
        self._failed += failed

    @property
    def invalid_readings(self) -> int:
        return self._polls.get("invalid_reading", 0)

    @property
    def oracle_failures(self) -> int:
        return self._polls.get("oracle_unavailable", 0)

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        def header(name: str):
            metric_def = self.METRICS.get(name, {})
            lines.append(f"# HELP {name} {metric_def.get('help', '')}")
            lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")

        def add_metric(name: str, value: float, labels: Dict[str, str] = None):
            if labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
                lines.append(f"{name}{{{label_str}}} {value}")
            else:
                lines.append(f"{name} {value}")

        header("payoutwatch_polls_total")
        for outcome, count in sorted(self._polls.items()):
            add_metric("payoutwatch_polls_total", count, {"outcome": outcome})

        header("payoutwatch_invalid_readings_total")
        add_metric("payoutwatch_invalid_readings_total", self.invalid_readings)

        header("payoutwatch_oracle_failures_total")
        add_metric("payoutwatch_oracle_failures_total", self.oracle_failures)

        header("payoutwatch_payouts_total")
        add_metric("payoutwatch_payouts_total", self._payouts)

        header("payoutwatch_deliveries_total")
        add_metric("payoutwatch_deliveries_total", self._delivered, {"result": "delivered"})
        add_metric("payoutwatch_deliveries_total", self._failed, {"result": "failed"})

        if self._last_payout_at is not None:
            header("payoutwatch_last_payout_timestamp_seconds")
            add_metric("payoutwatch_last_payout_timestamp_seconds", self._last_payout_at)

        header("payoutwatch_uptime_seconds")
        add_metric("payoutwatch_uptime_seconds", self._clock() - self._start_time)

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """Metrics as a dictionary (for JSON output)."""
        return {
            "polls": dict(self._polls),
            "invalid_readings": self.invalid_readings,
            "oracle_failures": self.oracle_failures,
            "payouts": self._payouts,
            "deliveries_ok": self._delivered,
            "deliveries_failed": self._failed,
            "last_payout_at": self._last_payout_at,
            "uptime_seconds": self._clock() - self._start_time,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        self._polls = {}
        self._payouts = 0
        self._delivered = 0
        self._failed = 0
        self._last_payout_at = None
