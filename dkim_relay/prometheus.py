"""Prometheus metrics exposed by the relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

from .observer import DeliveryObserver


class RelayMetrics(DeliveryObserver):
    """Observer publishing delivery transitions to a Prometheus registry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("dkr_sent_total", "Messages accepted by the transport", ["domain"], registry=self.registry)
        self.failed = Counter(
            "dkr_failed_total", "Messages that reached the failed state", ["domain", "reason"], registry=self.registry
        )
        self.retry_scheduled = Counter(
            "dkr_retry_scheduled_total", "Transient failures scheduled for retry", ["domain"], registry=self.registry
        )
        self.pending = Gauge("dkr_pending_retries", "Send attempts waiting for a retry", registry=self.registry)

    def on_sent(self, domain: str) -> None:
        self.sent.labels(domain=domain or "unknown").inc()

    def on_retry_scheduled(self, domain: str) -> None:
        self.retry_scheduled.labels(domain=domain or "unknown").inc()

    def on_failed(self, domain: str, reason: str) -> None:
        self.failed.labels(domain=domain or "unknown", reason=reason or "unknown").inc()

    def set_pending(self, value: int) -> None:
        """Update the gauge tracking pending retries."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
