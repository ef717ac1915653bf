from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from swarmcron.directory import RunState, ServiceDescriptor
from swarmcron.errors import ClusterError, ServiceNotFoundError
from swarmcron.executor import JobExecutor
from swarmcron.labels import LABEL_ENABLE, ServiceScheduleConfig
from swarmcron.logs import LOGGER_NAME
from swarmcron.reconciler import JobReconciler
from swarmcron.scheduler import TriggerScheduler


class FakeDirectory:
    """In-memory stand-in for ServiceDirectory."""

    def __init__(self) -> None:
        self.services: Dict[str, ServiceDescriptor] = {}
        self.run_states: Dict[str, List[Union[RunState, ClusterError]]] = {}
        self.redeploys: List[Tuple[str, Optional[int]]] = []
        self.redeploy_error: Optional[ClusterError] = None
        self.lookup_error: Optional[ClusterError] = None
        self.list_error: Optional[ClusterError] = None
        self.state_calls = 0
        self._lock = threading.Lock()

    def put(self, service_id: str, name: str, labels: Dict[str, str]) -> None:
        self.services[service_id] = ServiceDescriptor(id=service_id, name=name, labels=dict(labels))

    def delete(self, service_id: str) -> None:
        self.services.pop(service_id, None)

    def list_scheduled(self) -> List[ServiceDescriptor]:
        if self.list_error is not None:
            raise self.list_error
        return [service for service in self.services.values() if LABEL_ENABLE in service.labels]

    def get_service(self, service_id: str) -> ServiceDescriptor:
        if self.lookup_error is not None:
            raise self.lookup_error
        if service_id not in self.services:
            raise ServiceNotFoundError(f"Service {service_id} not found", service_id)
        return self.services[service_id]

    def get_run_state(self, service_id: str) -> RunState:
        with self._lock:
            self.state_calls += 1
            states = self.run_states.get(service_id, [RunState.UNKNOWN])
            state = states.pop(0) if len(states) > 1 else states[0]
        if isinstance(state, ClusterError):
            raise state
        return state

    def force_redeploy(self, service_id: str, replicas: Optional[int] = None) -> None:
        with self._lock:
            self.redeploys.append((service_id, replicas))
        if self.redeploy_error is not None:
            raise self.redeploy_error


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def scheduler():
    sched = TriggerScheduler(grace_seconds=2.0)
    yield sched
    sched.stop()


@pytest.fixture
def reconciler(directory: FakeDirectory, scheduler: TriggerScheduler) -> JobReconciler:
    def factory(service_id: str, service_name: str, config: ServiceScheduleConfig) -> JobExecutor:
        return JobExecutor(directory, service_id, service_name, config, poll_interval=0.01)

    return JobReconciler(directory, scheduler, factory)


@pytest.fixture(autouse=True)
def reset_swarmcron_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
