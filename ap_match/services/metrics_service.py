"""
Prometheus metrics for the match core.
"""

import logging

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)


class MatchMetricsService:
    """Service for managing Prometheus metrics of match runs and exceptions."""

    def __init__(self):
        """Initialize the metrics service with its own registry."""
        self.registry = CollectorRegistry()

        self.match_runs_total = Counter(
            'ap_match_runs_total',
            'Total number of match evaluations persisted',
            ['global_status'],
            registry=self.registry
        )

        self.match_run_duration_seconds = Histogram(
            'ap_match_run_duration_seconds',
            'Time spent evaluating and persisting a match',
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        self.exceptions_created_total = Counter(
            'ap_match_exceptions_created_total',
            'Total number of match exceptions created',
            ['exception_type', 'priority'],
            registry=self.registry
        )

        self.exceptions_resolved_total = Counter(
            'ap_match_exceptions_resolved_total',
            'Total number of match exceptions resolved',
            ['action'],
            registry=self.registry
        )

        self.sla_breaches_total = Counter(
            'ap_match_sla_breaches_total',
            'Total number of exception SLA breaches detected',
            ['exception_type'],
            registry=self.registry
        )

        self.escalations_total = Counter(
            'ap_match_escalations_total',
            'Total number of exceptions escalated',
            ['exception_type', 'to_role'],
            registry=self.registry
        )

        self.assignment_failures_total = Counter(
            'ap_match_assignment_failures_total',
            'Owner/SLA assignments that failed during a match run',
            registry=self.registry
        )

    def record_match_run(self, global_status: str, duration_seconds: float):
        """Record a persisted match run."""
        self.match_runs_total.labels(global_status=global_status).inc()
        self.match_run_duration_seconds.observe(duration_seconds)

    def record_exception_created(self, exception_type: str, priority: str):
        self.exceptions_created_total.labels(exception_type=exception_type, priority=priority).inc()

    def record_exception_resolved(self, action: str):
        self.exceptions_resolved_total.labels(action=action).inc()

    def record_sla_breach(self, exception_type: str):
        self.sla_breaches_total.labels(exception_type=exception_type).inc()

    def record_escalation(self, exception_type: str, to_role: str):
        self.escalations_total.labels(exception_type=exception_type, to_role=to_role).inc()

    def record_assignment_failure(self):
        self.assignment_failures_total.inc()

    def generate_metrics(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global metrics service instance
match_metrics = MatchMetricsService()
