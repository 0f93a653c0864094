import pytest

from rental_sync.common.json_logger import JsonLogger
from rental_sync.online_orders.run_status import (
    LOG_RING_SIZE,
    InvalidTransition,
    RunResult,
    RunState,
    RunStatusTracker,
)


def test_happy_path_transitions() -> None:
    tracker = RunStatusTracker()

    tracker.begin("zanchen", "开始同步")
    assert tracker.is_active
    assert tracker.transition(RunState.AWAITING_USER, "需要验证", needs_attention=True)
    assert tracker.snapshot()["needsAttention"] is True
    tracker.transition(RunState.RUNNING, "继续同步")
    tracker.succeed(RunResult(extracted_count=3, pages_visited=1), "已保存快照到数据库")

    snapshot = tracker.snapshot()
    assert snapshot["status"] == "success"
    assert snapshot["siteId"] == "zanchen"
    assert snapshot["needsAttention"] is False
    assert snapshot["lastResult"]["extractedCount"] == 3
    assert snapshot["lastRunAt"] is not None


def test_same_message_is_not_reported_as_changed() -> None:
    tracker = RunStatusTracker()
    tracker.begin("zanchen", "开始同步")

    assert tracker.transition(RunState.RUNNING, "开始同步") is False
    assert tracker.transition(RunState.RUNNING, "第 2 页") is True


@pytest.mark.parametrize(
    "path",
    [
        [RunState.SUCCESS],
        [RunState.AWAITING_USER],
        [RunState.RUNNING, RunState.SUCCESS, RunState.AWAITING_USER],
        [RunState.RUNNING, RunState.AWAITING_USER, RunState.SUCCESS],
    ],
)
def test_illegal_edges_raise(path) -> None:
    tracker = RunStatusTracker()
    *head, last = path
    for state in head:
        tracker.transition(state)

    with pytest.raises(InvalidTransition):
        tracker.transition(last)


def test_fail_from_idle_goes_through_running() -> None:
    tracker = RunStatusTracker()

    tracker.fail("站点 zanchen 未启用")

    assert tracker.state is RunState.ERROR
    assert tracker.message == "站点 zanchen 未启用"
    assert not tracker.is_active


def test_log_ring_keeps_latest_lines(log_stream) -> None:
    tracker = RunStatusTracker()
    logger = JsonLogger(stream=log_stream, sinks=[tracker.log_sink])

    for index in range(LOG_RING_SIZE + 20):
        logger.info(phase="sync", message=f"line {index}", site_id="zanchen")

    logs = tracker.snapshot()["logs"]
    assert len(logs) == LOG_RING_SIZE
    assert logs[0].endswith("line 20")
    assert logs[-1].endswith(f"line {LOG_RING_SIZE + 19}")
