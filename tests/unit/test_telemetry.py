import asyncio

import pytest

from vision_bridge.telemetry import SimpleReporter, TelemetryContext, TelemetryReporter

pytestmark = pytest.mark.unit


class ExplodingReporter:
    def record_timing(self, scope, duration, **metadata):
        raise RuntimeError("boom")

    def record_metric(self, scope, value, **metadata):
        raise RuntimeError("boom")


def test_no_reporters_returns_shared_noop():
    ctx = TelemetryContext()

    assert ctx is TelemetryContext()
    assert not ctx.enabled
    with ctx("anything", k=1) as scoped:
        scoped.count("x")
        scoped.gauge("y", 2.0)


def test_simple_reporter_satisfies_protocol():
    assert isinstance(SimpleReporter(), TelemetryReporter)


def test_metrics_are_prefixed_with_active_scopes():
    reporter = SimpleReporter()
    tele = TelemetryContext(reporter)

    with tele("image.normalize"):
        tele.gauge("image.bytes", 2048)
        with tele("inner"):
            tele.count("hits")
            tele.count("hits", 2)
    tele.count("top")

    assert reporter.metric_total("image.normalize.image.bytes") == 2048
    assert reporter.metric_total("image.normalize.inner.hits") == 3
    assert reporter.metric_total("top") == 1
    assert set(reporter.timings) == {"image.normalize", "image.normalize.inner"}
    _, metadata = reporter.timings["image.normalize.inner"][0]
    assert metadata["depth"] == 1
    assert metadata["parent_scope"] == "image.normalize"


def test_empty_scope_name_is_rejected():
    tele = TelemetryContext(SimpleReporter())

    with pytest.raises(ValueError, match="non-empty"), tele(""):
        pass


def test_failing_reporter_does_not_break_pipeline(caplog):
    good = SimpleReporter()
    tele = TelemetryContext(ExplodingReporter(), good)

    with tele("stage"):
        tele.count("ok")

    assert good.metric_total("stage.ok") == 1
    assert "ExplodingReporter" in caplog.text


@pytest.mark.asyncio
async def test_scope_carries_into_worker_threads():
    reporter = SimpleReporter()
    tele = TelemetryContext(reporter)

    with tele("image.normalize"):
        await asyncio.to_thread(tele.count, "image.reencoded")

    assert reporter.metric_total("image.normalize.image.reencoded") == 1


def test_report_lists_timings_and_metrics():
    reporter = SimpleReporter()
    tele = TelemetryContext(reporter)
    with tele("upstream.invoke"):
        tele.count("upstream.retry")

    report = reporter.get_report()

    assert "upstream.invoke" in report
    assert "--- Metrics ---" in report
    assert "upstream.invoke.upstream.retry" in report


def test_reporter_bounds_entries_per_scope():
    reporter = SimpleReporter(max_entries_per_scope=2)
    tele = TelemetryContext(reporter)

    for _ in range(5):
        tele.count("n")

    assert reporter.metric_total("n") == 2
