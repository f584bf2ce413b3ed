"""Prometheus metrics exposed by the web push dispatcher."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class PushMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.published = Counter("wpd_published_total", "Total push tasks published", ["queue"], registry=self.registry)
        self.delivered = Counter("wpd_delivered_total", "Total delivered web pushes", registry=self.registry)
        self.not_delivered = Counter(
            "wpd_not_delivered_total", "Total web pushes not delivered", ["reason"], registry=self.registry
        )
        self.processing_failed = Counter(
            "wpd_processing_failed_total", "Total gateway calls that failed before a response", registry=self.registry
        )
        self.invalid_subscriptions = Counter(
            "wpd_invalid_subscriptions_total", "Total subscriptions found invalid", registry=self.registry
        )
        self.rate_limited = Counter("wpd_rate_limited_total", "Total rate limited occurrences", registry=self.registry)
        self.sender_active = Gauge("wpd_sender_active", "Senders currently listening", registry=self.registry)

    def inc_published(self, queue_name: str):
        self.published.labels(queue=queue_name or "default").inc()

    def inc_delivered(self):
        self.delivered.inc()

    def inc_not_delivered(self, reason: str):
        """Increase the ``not_delivered`` counter for the given failure reason."""
        self.not_delivered.labels(reason=reason or "unknown").inc()

    def inc_processing_failed(self):
        self.processing_failed.inc()

    def inc_invalid_subscription(self):
        self.invalid_subscriptions.inc()

    def inc_rate_limited(self):
        self.rate_limited.inc()

    def set_sender_active(self, active: bool):
        """Update the gauge tracking listening senders."""
        if active:
            self.sender_active.inc()
        else:
            self.sender_active.dec()

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
