"""Job reconciliation.

Every call re-derives the desired trigger for one service from its current
labels and applies the difference to the scheduler. Nothing is taken from the
event that caused the call, so duplicated or reordered events converge on the
same registry.
"""

from __future__ import annotations

import enum
import logging
import threading
import weakref
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol

from .directory import ServiceDescriptor
from .errors import ClusterError, ConfigError, InvalidScheduleError, SchedulerError, ServiceNotFoundError
from .labels import ServiceScheduleConfig, parse_labels
from .scheduler import TriggerScheduler

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[str, str, ServiceScheduleConfig], Callable[[], Any]]


class Action(enum.Enum):
    NOOP = "noop"
    REGISTERED = "registered"
    UPDATED = "updated"
    REMOVED = "removed"


class Directory(Protocol):
    def get_service(self, service_id: str) -> ServiceDescriptor: ...


class JobReconciler:
    def __init__(
        self,
        directory: Directory,
        scheduler: TriggerScheduler,
        executor_factory: ExecutorFactory,
    ) -> None:
        self.directory = directory
        self.scheduler = scheduler
        self.executor_factory = executor_factory
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _service_lock(self, service_id: str) -> threading.Lock:
        # entries live only while some caller holds the lock
        with self._locks_guard:
            return self._locks.setdefault(service_id, threading.Lock())

    def reconcile(
        self,
        service_id: str,
        service_name: str = "",
        labels: Optional[Mapping[str, str]] = None,
    ) -> Action:
        """Bring the registration for ``service_id`` in line with the cluster.

        ``labels`` may be passed when the caller already holds them (the
        startup scan); otherwise the service is looked up. Raises
        ``ConfigError`` for a misconfigured service after removing any
        registration it had, and ``ClusterError`` when the lookup fails.
        """
        with self._service_lock(service_id):
            if labels is None:
                try:
                    descriptor = self.directory.get_service(service_id)
                except ServiceNotFoundError:
                    return self._unregister(service_id, service_name, "service no longer exists")
                service_name = descriptor.name
                labels = descriptor.labels
            service_name = service_name or service_id

            try:
                config = parse_labels(labels)
            except ConfigError:
                self._unregister(service_id, service_name, "invalid configuration")
                raise

            if not config.enabled:
                return self._unregister(service_id, service_name, "scheduling disabled")

            try:
                return self._register(service_id, service_name, config)
            except SchedulerError as exc:
                self._unregister(service_id, service_name, "schedule rejected by scheduler")
                raise InvalidScheduleError(f"Error: {exc}") from exc

    def _register(self, service_id: str, service_name: str, config: ServiceScheduleConfig) -> Action:
        extra = {"service_id": service_id, "service": service_name, "schedule": config.schedule}
        current = self.scheduler.get(service_id)
        if current is None:
            self.scheduler.add(
                service_id,
                config.schedule,
                self.executor_factory(service_id, service_name, config),
                name=service_name,
                payload=config,
            )
            logger.info(
                "Registered job for service %s (%s)",
                service_name,
                config.schedule,
                extra={**extra, "action": Action.REGISTERED.value},
            )
            return Action.REGISTERED

        if current.cron_expr == config.schedule and current.payload == config:
            logger.debug("Job for service %s is up to date", service_name, extra={**extra, "action": Action.NOOP.value})
            return Action.NOOP

        self.scheduler.replace(
            current.handle,
            config.schedule,
            callback=self.executor_factory(service_id, service_name, config),
            payload=config,
        )
        logger.info(
            "Updated job for service %s (%s -> %s)",
            service_name,
            current.cron_expr,
            config.schedule,
            extra={**extra, "action": Action.UPDATED.value},
        )
        return Action.UPDATED

    def _unregister(self, service_id: str, service_name: str, reason: str) -> Action:
        current = self.scheduler.get(service_id)
        if current is None:
            return Action.NOOP
        self.scheduler.remove(current.handle)
        logger.info(
            "Removed job for service %s (%s)",
            service_name or current.name,
            reason,
            extra={"service_id": service_id, "service": service_name or current.name, "action": Action.REMOVED.value},
        )
        return Action.REMOVED

    def seed(self, descriptors: Iterable[ServiceDescriptor]) -> Dict[Action, int]:
        """Reconcile a bulk listing; one bad service never stops the pass."""
        summary = {action: 0 for action in Action}
        for descriptor in descriptors:
            try:
                action = self.reconcile(descriptor.id, descriptor.name, labels=descriptor.labels)
            except ConfigError as exc:
                logger.warning(
                    "Cannot manage job for service %s: %s",
                    descriptor.name,
                    exc,
                    extra={"service_id": descriptor.id, "service": descriptor.name},
                )
                continue
            except ClusterError as exc:
                logger.error(
                    "Cannot manage job for service %s: %s",
                    descriptor.name,
                    exc,
                    extra={"service_id": descriptor.id, "service": descriptor.name},
                )
                continue
            summary[action] += 1
        return summary
