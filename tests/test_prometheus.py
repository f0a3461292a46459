from campaign_dispatch.prometheus import DispatchMetrics


def test_dispatch_metrics_counters_and_gauge():
    metrics = DispatchMetrics()

    metrics.inc_sent("email")
    metrics.inc_sent("sms")
    metrics.inc_error(None)
    metrics.inc_retried("email")
    metrics.inc_dead("")
    metrics.inc_throttled("sms")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'cd_sent_total{channel="email"} 1.0' in output
    assert b'cd_sent_total{channel="sms"} 1.0' in output
    assert b'cd_errors_total{channel="email"} 1.0' in output
    assert b'cd_dead_total{channel="email"} 1.0' in output
    assert b'cd_throttled_total{channel="sms"} 1.0' in output
    assert b"cd_pending_jobs 3.0" in output


def test_registries_are_independent():
    first = DispatchMetrics()
    second = DispatchMetrics()
    first.inc_sent("email")
    assert b'cd_sent_total{channel="email"} 1.0' not in second.generate_latest()
