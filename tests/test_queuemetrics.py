import pytest

from protodb_controller.metrics import REGISTRY, WorkqueueMetricsProvider
from protodb_controller.queuemetrics import DefaultQueueMetrics, NoMetrics, new_queue_metrics


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def provider():
    return WorkqueueMetricsProvider()


def test_unnamed_queue_records_nothing(provider):
    metrics = new_queue_metrics(provider, "", FakeClock())
    assert isinstance(metrics, NoMetrics)
    metrics.add("a")
    metrics.retry()
    labels = [
        sample.labels.get("name")
        for family in REGISTRY.gather()
        for sample in family.samples
    ]
    assert "" not in labels


def test_named_queue_gets_default_metrics(provider):
    metrics = new_queue_metrics(provider, "qm-named", FakeClock())
    assert isinstance(metrics, DefaultQueueMetrics)
    metrics.add("a")
    assert provider.new_adds_metric("qm-named").value == 1


def test_add_and_get_track_depth(provider):
    metrics = new_queue_metrics(provider, "qm-depth", FakeClock())
    metrics.add("a")
    metrics.add("b")
    assert provider.new_depth_metric("qm-depth").value == 2
    assert provider.new_adds_metric("qm-depth").value == 2
    metrics.get("a")
    assert provider.new_depth_metric("qm-depth").value == 1


def test_latency_measured_from_first_add(provider):
    clock = FakeClock()
    metrics = new_queue_metrics(provider, "qm-latency", clock)
    metrics.add("a")
    clock.advance(2.0)
    metrics.add("a")
    clock.advance(1.5)
    metrics.get("a")
    latency = provider.new_latency_metric("qm-latency")
    assert latency.count == 1
    assert latency.sum == pytest.approx(2.0 + 1.5)


def test_done_observes_work_duration(provider):
    clock = FakeClock()
    metrics = new_queue_metrics(provider, "qm-work", clock)
    metrics.add("a")
    metrics.get("a")
    clock.advance(4.0)
    metrics.done("a")
    metrics.done("a")
    work = provider.new_work_duration_metric("qm-work")
    assert work.count == 1
    assert work.sum == pytest.approx(4.0)


def test_update_unfinished_work(provider):
    clock = FakeClock()
    metrics = new_queue_metrics(provider, "qm-unfinished", clock)
    metrics.get("a")
    clock.advance(2.0)
    metrics.get("b")
    clock.advance(1.0)
    metrics.update_unfinished_work()
    total = provider.new_unfinished_work_seconds_metric("qm-unfinished").value
    longest = provider.new_longest_running_processor_seconds_metric("qm-unfinished").value
    assert longest == pytest.approx(3.0)
    assert total == pytest.approx(3.0 + 1.0)
    metrics.done("a")
    metrics.done("b")
    metrics.update_unfinished_work()
    assert provider.new_unfinished_work_seconds_metric("qm-unfinished").value == 0.0


def test_retry_counts(provider):
    metrics = new_queue_metrics(provider, "qm-retry", FakeClock())
    metrics.retry()
    metrics.retry()
    assert provider.new_retries_metric("qm-retry").value == 2