"""Prometheus metrics exposed by the campaign dispatcher."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("cd_sent_total", "Total delivered sends", ["channel"], registry=self.registry)
        self.errors = Counter("cd_errors_total", "Total fatal send errors", ["channel"], registry=self.registry)
        self.retried = Counter("cd_retried_total", "Total sends requeued for retry", ["channel"], registry=self.registry)
        self.dead = Counter("cd_dead_total", "Total sends dead-lettered", ["channel"], registry=self.registry)
        self.throttled = Counter("cd_throttled_total", "Total provider throttling signals", ["channel"], registry=self.registry)
        self.pending = Gauge("cd_pending_jobs", "Queue jobs pending or processing", registry=self.registry)

    def inc_sent(self, channel: str):
        """Increase the ``sent`` counter for the given channel."""
        self.sent.labels(channel=channel or "email").inc()

    def inc_error(self, channel: str):
        """Increase the ``errors`` counter for the given channel."""
        self.errors.labels(channel=channel or "email").inc()

    def inc_retried(self, channel: str):
        """Increase the ``retried`` counter for the given channel."""
        self.retried.labels(channel=channel or "email").inc()

    def inc_dead(self, channel: str):
        """Increase the ``dead`` counter for the given channel."""
        self.dead.labels(channel=channel or "email").inc()

    def inc_throttled(self, channel: str):
        """Increase the ``throttled`` counter for the given channel."""
        self.throttled.labels(channel=channel or "email").inc()

    def set_pending(self, value: int):
        """Update the gauge tracking active queue jobs."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
