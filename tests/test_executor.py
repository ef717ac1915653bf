from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import wait_for
from swarmcron.directory import RunState
from swarmcron.errors import ConflictError, TransientClusterError
from swarmcron.executor import DECISION_RUN, DECISION_SKIP, JobExecutor
from swarmcron.labels import LABEL_ENABLE, LABEL_SCHEDULE, ServiceScheduleConfig

UTC = timezone.utc


def _config(**overrides) -> ServiceScheduleConfig:
    values = {"enabled": True, "schedule": "*/5 * * * *"}
    values.update(overrides)
    return ServiceScheduleConfig(**values)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_skip_running_skips_active_service(directory) -> None:
    directory.run_states["svc1"] = [RunState.RUNNING]
    attempt = JobExecutor(directory, "svc1", "web", _config(skip_running=True)).run()
    assert attempt.decision == DECISION_SKIP
    assert attempt.run_state is RunState.RUNNING
    assert directory.redeploys == []


def test_skip_running_skips_pending_service(directory) -> None:
    directory.run_states["svc1"] = [RunState.PENDING]
    attempt = JobExecutor(directory, "svc1", "web", _config(skip_running=True)).run()
    assert attempt.decision == DECISION_SKIP
    assert directory.redeploys == []


@pytest.mark.parametrize("state", [RunState.COMPLETE, RunState.FAILED, RunState.UNKNOWN])
def test_skip_running_redeploys_settled_service(directory, state: RunState) -> None:
    directory.run_states["svc1"] = [state]
    attempt = JobExecutor(directory, "svc1", "web", _config(skip_running=True, replicas=2)).run()
    assert attempt.decision == DECISION_RUN
    assert attempt.success is True
    assert directory.redeploys == [("svc1", 2)]


def test_without_skip_running_state_is_not_consulted(directory) -> None:
    directory.run_states["svc1"] = [RunState.RUNNING]
    attempt = JobExecutor(directory, "svc1", "web", _config()).run()
    assert attempt.decision == DECISION_RUN
    assert attempt.success is True
    assert directory.state_calls == 0
    assert directory.redeploys == [("svc1", 1)]


def test_run_id_and_timestamps(directory) -> None:
    attempt = JobExecutor(directory, "svc1", "web", _config()).run()
    assert attempt.run_id.startswith("web:")
    assert attempt.service_id == "svc1"
    assert attempt.started_at <= attempt.ended_at
    assert attempt.started_at.tzinfo is not None


def test_redeploy_failure_is_reported_not_raised(directory, caplog: pytest.LogCaptureFixture) -> None:
    directory.redeploy_error = ConflictError("update out of sequence", "svc1")
    attempt = JobExecutor(directory, "svc1", "web", _config()).run()
    assert attempt.success is False
    assert "out of sequence" in attempt.error
    assert "Forced redeploy of web failed" in caplog.text


def test_run_state_failure_skips_the_fire(directory) -> None:
    directory.run_states["svc1"] = [TransientClusterError("timeout", "svc1")]
    attempt = JobExecutor(directory, "svc1", "web", _config(skip_running=True)).run()
    assert attempt.decision == DECISION_SKIP
    assert attempt.error == "timeout"
    assert directory.redeploys == []


def test_monitoring_timeout_waits_for_settle(directory) -> None:
    clock = _FakeClock()
    directory.run_states["svc1"] = [RunState.RUNNING, RunState.RUNNING, RunState.COMPLETE]
    executor = JobExecutor(
        directory,
        "svc1",
        "web",
        _config(skip_running=True, monitoring_timeout=timedelta(seconds=10)),
        poll_interval=2.0,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
    )
    attempt = executor.run()
    assert attempt.decision == DECISION_RUN
    assert attempt.run_state is RunState.COMPLETE
    assert directory.state_calls == 3
    assert clock.sleeps == [2.0, 2.0]
    assert directory.redeploys == [("svc1", 1)]


def test_monitoring_timeout_expiry_runs_anyway(directory, caplog: pytest.LogCaptureFixture) -> None:
    clock = _FakeClock()
    directory.run_states["svc1"] = [RunState.RUNNING]
    executor = JobExecutor(
        directory,
        "svc1",
        "web",
        _config(skip_running=True, monitoring_timeout=timedelta(seconds=5)),
        poll_interval=2.0,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
    )
    attempt = executor.run()
    assert attempt.decision == DECISION_RUN
    assert attempt.run_state is None
    assert clock.sleeps == [2.0, 2.0, 1.0]
    assert "did not settle" in caplog.text
    assert directory.redeploys == [("svc1", 1)]


def test_transient_failure_keeps_job_registered(directory, scheduler, reconciler) -> None:
    directory.put("svc1", "web", {LABEL_ENABLE: "true", LABEL_SCHEDULE: "* * * * *"})
    reconciler.reconcile("svc1")
    directory.redeploy_error = TransientClusterError("connection reset", "svc1")

    scheduler.run_pending(now=datetime(2100, 1, 1, 0, 0, tzinfo=UTC))
    assert wait_for(lambda: len(directory.redeploys) == 1)
    assert scheduler.get("svc1") is not None
    assert wait_for(lambda: not any(t.is_alive() for t in threading.enumerate() if t.name == "swarmcron-job-web"))

    directory.redeploy_error = None
    scheduler.run_pending(now=datetime(2100, 1, 1, 0, 1, tzinfo=UTC))
    assert wait_for(lambda: len(directory.redeploys) == 2)


def test_wait_for_settle_uses_given_timeout(directory) -> None:
    clock = _FakeClock()
    executor = JobExecutor(
        directory,
        "svc1",
        "web",
        _config(skip_running=True),
        poll_interval=1.0,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
    )
    directory.run_states["svc1"] = [RunState.RUNNING]
    assert executor._wait_for_settle("run-1", timedelta(seconds=2)) is None
    assert clock.sleeps == [1.0, 1.0]

    directory.run_states["svc1"] = [RunState.RUNNING, RunState.COMPLETE]
    assert executor._wait_for_settle("run-2", timedelta(seconds=3)) is RunState.COMPLETE
