from __future__ import annotations

import dataclasses

import pytest

from swarmcron.config import load_settings
from swarmcron.engine import Engine
from swarmcron.errors import SchedulerError, StreamFailure, TransientClusterError
from swarmcron.executor import JobExecutor
from swarmcron.labels import LABEL_ENABLE, LABEL_SCHEDULE, ServiceScheduleConfig
from swarmcron.reconciler import Action


def _engine(directory, events=()) -> Engine:
    settings = dataclasses.replace(load_settings(env={}), shutdown_grace_seconds=1.0, poll_interval_seconds=0.25)
    return Engine(settings, client=object(), directory=directory, stream_factory=lambda: iter(list(events)))


def _event(action: str, service_id: str, name: str) -> dict:
    return {"Type": "service", "Action": action, "Actor": {"ID": service_id, "Attributes": {"name": name}}}


def test_bootstrap_seeds_existing_services(directory) -> None:
    directory.put("svc1", "web", {LABEL_ENABLE: "true", LABEL_SCHEDULE: "*/5 * * * *"})
    directory.put("svc2", "broken", {LABEL_ENABLE: "true", LABEL_SCHEDULE: "xx"})
    engine = _engine(directory)
    summary = engine.bootstrap()
    assert summary[Action.REGISTERED] == 1
    assert len(engine.scheduler) == 1
    engine.shutdown()


def test_bootstrap_survives_listing_failure(directory, caplog: pytest.LogCaptureFixture) -> None:
    directory.list_error = TransientClusterError("daemon unreachable")
    engine = _engine(directory)
    summary = engine.bootstrap()
    assert sum(summary.values()) == 0
    assert "Cannot retrieve scheduled services" in caplog.text
    engine.shutdown()


def test_events_after_bootstrap_update_registry(directory) -> None:
    directory.put("svc1", "web", {LABEL_ENABLE: "true", LABEL_SCHEDULE: "*/5 * * * *"})
    engine = _engine(directory, events=[_event("create", "svc1", "web")])
    engine.start()
    with pytest.raises(StreamFailure):
        engine.run_forever()
    assert engine.scheduler.get("svc1").cron_expr == "*/5 * * * *"
    engine.shutdown()


def test_request_stop_before_run_returns(directory) -> None:
    engine = _engine(directory)
    engine.request_stop()
    engine.run_forever()
    assert engine.listener.stopped
    engine.shutdown()


def test_shutdown_stops_scheduler_and_is_idempotent(directory) -> None:
    engine = _engine(directory)
    engine.start()
    assert engine.scheduler.running
    engine.shutdown()
    engine.shutdown()
    assert not engine.scheduler.running
    assert engine.listener.stopped
    with pytest.raises(SchedulerError):
        engine.scheduler.start()


def test_executor_uses_configured_poll_interval(directory) -> None:
    engine = _engine(directory)
    executor = engine._executor("svc1", "web", ServiceScheduleConfig(enabled=True, schedule="@hourly"))
    assert isinstance(executor, JobExecutor)
    assert executor.poll_interval == 0.25
    assert executor.directory is directory


def test_bootstrap_subscribes_before_listing(directory, monkeypatch: pytest.MonkeyPatch) -> None:
    order = []
    events = []
    listing = directory.list_scheduled

    def subscribe():
        order.append("subscribe")
        return iter(events)

    def list_scheduled():
        order.append("list")
        services = listing()
        # created after the listing was taken; only the event reports it
        directory.put("svc1", "web", {LABEL_ENABLE: "true", LABEL_SCHEDULE: "*/5 * * * *"})
        events.append(_event("create", "svc1", "web"))
        return services

    monkeypatch.setattr(directory, "list_scheduled", list_scheduled)
    settings = dataclasses.replace(load_settings(env={}), shutdown_grace_seconds=1.0)
    engine = Engine(settings, client=object(), directory=directory, stream_factory=subscribe)
    engine.bootstrap()
    assert order == ["subscribe", "list"]
    assert engine.scheduler.get("svc1") is None

    with pytest.raises(StreamFailure):
        engine.run_forever()
    assert order == ["subscribe", "list"]
    assert engine.scheduler.get("svc1") is not None
    engine.shutdown()


def test_bootstrap_raises_when_subscription_fails(directory) -> None:
    def subscribe():
        raise ConnectionError("no daemon")

    engine = Engine(load_settings(env={}), client=object(), directory=directory, stream_factory=subscribe)
    with pytest.raises(StreamFailure, match="Cannot subscribe"):
        engine.bootstrap()
    engine.shutdown()
