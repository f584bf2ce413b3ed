from webpush_dispatch.prometheus import PushMetrics


def test_push_metrics_counters_and_gauge():
    metrics = PushMetrics()

    metrics.inc_published("google.webpush.queue")
    metrics.inc_published("")
    metrics.inc_delivered()
    metrics.inc_not_delivered("rate_limited")
    metrics.inc_not_delivered(None)
    metrics.inc_processing_failed()
    metrics.inc_invalid_subscription()
    metrics.inc_rate_limited()
    metrics.set_sender_active(True)

    output = metrics.generate_latest()
    assert b'wpd_published_total{queue="google.webpush.queue"} 1.0' in output
    assert b'wpd_published_total{queue="default"} 1.0' in output
    assert b"wpd_delivered_total 1.0" in output
    assert b'wpd_not_delivered_total{reason="unknown"} 1.0' in output
    assert b"wpd_invalid_subscriptions_total 1.0" in output
    assert b"wpd_sender_active 1.0" in output


def test_registries_are_isolated():
    first = PushMetrics()
    second = PushMetrics()
    first.inc_delivered()
    assert b"wpd_delivered_total 0.0" in second.generate_latest()
