from dkim_relay.prometheus import RelayMetrics


def test_relay_metrics_counters_and_gauge():
    metrics = RelayMetrics()

    metrics.on_sent("example.com")
    metrics.on_failed(None, "retries_exhausted")
    metrics.on_retry_scheduled("")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'dkr_sent_total{domain="example.com"} 1.0' in output
    assert b'dkr_failed_total{domain="unknown",reason="retries_exhausted"} 1.0' in output
    assert b'dkr_retry_scheduled_total{domain="unknown"} 1.0' in output
    assert b"dkr_pending_retries 3.0" in output


def test_each_instance_uses_its_own_registry():
    first = RelayMetrics()
    second = RelayMetrics()
    first.on_sent("example.com")
    assert b"example.com" not in second.generate_latest()
