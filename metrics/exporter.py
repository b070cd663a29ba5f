"""
Prometheus exporter for Harbormaster.
Tracks deployments, per-instance rollouts, health checks and teardowns.
"""

import time
import logging
from typing import Dict, Optional
from collections import defaultdict
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class MetricsExporter:
    """
    Collects rollout metrics and renders them in Prometheus text format.
    Each exporter owns its own CollectorRegistry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()
        self.last_deployment: Dict[str, Dict] = {}
        self.outcomes = defaultdict(int)

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        self.deployments = Counter(
            'harbormaster_deployments_total', 'Number of deployments',
            ['app', 'outcome'], registry=self.registry
        )
        self.instance_rollouts = Counter(
            'harbormaster_instance_rollouts_total', 'Number of per-instance rollouts',
            ['app', 'outcome'], registry=self.registry
        )
        self.rollout_duration = Histogram(
            'harbormaster_rollout_duration_seconds', 'Per-instance rollout duration',
            ['app'], registry=self.registry,
            buckets=(1, 2.5, 5, 10, 20, 30, 60, 120, 300)
        )
        self.health_checks = Counter(
            'harbormaster_health_checks_total', 'Number of instance health checks',
            ['status'], registry=self.registry
        )
        self.instances_retired = Counter(
            'harbormaster_instances_retired_total', 'Previous-generation instances torn down',
            ['app'], registry=self.registry
        )

    def record_deployment(self, app: str, outcome: str, image: str, count: int):
        self.deployments.labels(app=app, outcome=outcome).inc()
        self.outcomes[outcome] += 1
        self.last_deployment[app] = {
            "image": image,
            "count": count,
            "outcome": outcome,
            "timestamp": time.time(),
        }

    def record_rollout(self, app: str, outcome: str, duration_seconds: float):
        self.instance_rollouts.labels(app=app, outcome=outcome).inc()
        self.rollout_duration.labels(app=app).observe(duration_seconds)

    def record_health_check(self, status: str):
        self.health_checks.labels(status=status).inc()

    def record_retired(self, app: str, count: int = 1):
        if count > 0:
            self.instances_retired.labels(app=app).inc(count)

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus format."""
        try:
            return generate_latest(self.registry).decode('utf-8')
        except Exception as e:
            logger.error(f"Failed to generate Prometheus metrics: {e}")
            return ""

    def get_metrics_summary(self) -> Dict:
        return {
            "timestamp": time.time(),
            "deployments": dict(self.outcomes),
            "last_deployment": dict(self.last_deployment),
        }
