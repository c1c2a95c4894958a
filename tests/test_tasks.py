import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from portfolio_engine.exceptions import SimulationCancelled
from portfolio_engine.results import SimulationResult
from portfolio_engine.tasks import (
    CancellationToken,
    EngineTask,
    ProgressChannel,
    ProgressEvent,
    TaskScheduler,
    TaskStatus,
)


TIMEOUT = 30


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


def doubled(x, progress=None, cancel_token=None):
    progress(1, 1, "work")
    return 2 * x


def failing(progress=None, cancel_token=None):
    raise ValueError("boom")


def blocking(started, progress=None, cancel_token=None):
    """Spins until cancelled, like an engine polling between batches."""
    started.set()
    while True:
        cancel_token.raise_if_cancelled("sampling")
        threading.Event().wait(0.01)


def test_progress_channel_drops_oldest():
    channel = ProgressChannel(capacity=3)
    for i in range(5):
        channel(i, 5, "sampling")

    events = channel.drain()
    assert [e.current for e in events] == [2, 3, 4]
    assert channel.dropped == 2
    assert channel.get(timeout=0.01) is None


def test_progress_event_fraction():
    assert ProgressEvent(3, 4, "sampling").fraction == 0.75
    assert ProgressEvent(0, 0, "sampling").fraction == 0.0


def test_cancellation_token():
    token = CancellationToken()
    assert not token.is_cancelled()
    token.raise_if_cancelled()

    token.cancel()
    assert token.is_cancelled()
    with pytest.raises(SimulationCancelled):
        token.raise_if_cancelled("statistics")


def test_task_completes(executor):
    task = EngineTask(doubled, 21, executor=executor, name="double")
    outcome = task.result(TIMEOUT)

    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.value == 42
    assert task.status == TaskStatus.COMPLETED
    assert task.progress.drain() == [ProgressEvent(1, 1, "work")]


def test_task_failure_is_captured(executor):
    outcome = EngineTask(failing, executor=executor).result(TIMEOUT)
    assert outcome.status == TaskStatus.FAILED
    assert isinstance(outcome.error, ValueError)
    assert outcome.value is None


def test_cancelled_task_has_no_value(executor):
    started = threading.Event()
    task = EngineTask(blocking, started, executor=executor)
    assert started.wait(TIMEOUT)

    task.cancel()
    outcome = task.result(TIMEOUT)
    assert outcome.status == TaskStatus.CANCELLED
    assert outcome.value is None


def test_resubmitting_supersedes_previous_task():
    started = threading.Event()
    with TaskScheduler(max_workers=2) as scheduler:
        stale = scheduler.submit("run", blocking, started)
        assert started.wait(TIMEOUT)
        fresh = scheduler.submit("run", doubled, 5)

        assert stale.result(TIMEOUT).status == TaskStatus.SUPERSEDED
        outcome = fresh.result(TIMEOUT)
        assert outcome.status == TaskStatus.COMPLETED
        assert outcome.value == 10
        assert scheduler.active("run") is fresh


def test_cancel_unknown_key_is_noop():
    with TaskScheduler(max_workers=1) as scheduler:
        scheduler.cancel("missing")
        assert scheduler.active("missing") is None


def test_submit_simulation(two_asset_request):
    with TaskScheduler(max_workers=1) as scheduler:
        task = scheduler.submit_simulation(two_asset_request)
        outcome = task.result(120)

    assert outcome.status == TaskStatus.COMPLETED
    assert isinstance(outcome.value, SimulationResult)
    phases = {event.phase for event in task.progress.drain()}
    assert {"sampling", "statistics"} <= phases


def test_superseded_after_outcome_decided_discards_value(monkeypatch):
    decided = threading.Event()
    release = threading.Event()
    held = []
    finish = EngineTask._finish

    def slow_finish(self, outcome):
        outcome = finish(self, outcome)
        if not held:
            # hold the first run between deciding its outcome and completing
            held.append(self)
            decided.set()
            release.wait(TIMEOUT)
        return outcome

    monkeypatch.setattr(EngineTask, "_finish", slow_finish)

    with TaskScheduler(max_workers=2) as scheduler:
        stale = scheduler.submit("run", doubled, 1)
        assert decided.wait(TIMEOUT)
        fresh = scheduler.submit("run", doubled, 2)
        release.set()

        outcome = stale.result(TIMEOUT)
        assert outcome.status == TaskStatus.SUPERSEDED
        assert outcome.value is None
        assert stale.status == TaskStatus.SUPERSEDED
        assert fresh.result(TIMEOUT).value == 4


def test_cancel_after_completion_keeps_outcome(executor):
    task = EngineTask(doubled, 3, executor=executor)
    assert task.result(TIMEOUT).value == 6

    task.cancel()
    outcome = task.result(TIMEOUT)
    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.value == 6
    assert task.status == TaskStatus.COMPLETED
