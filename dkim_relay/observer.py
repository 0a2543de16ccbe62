"""Observer interface notified of delivery state transitions."""


class DeliveryObserver:
    """No-op observer; subclass and override the hooks you need."""

    def on_sent(self, domain: str) -> None:
        pass

    def on_retry_scheduled(self, domain: str) -> None:
        pass

    def on_failed(self, domain: str, reason: str) -> None:
        pass

    def set_pending(self, value: int) -> None:
        pass
