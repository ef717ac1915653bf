"""Engine: owns the scheduler, directory, reconciler and listener for one process."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import docker

from .config import Settings
from .directory import ServiceDirectory
from .errors import ClusterError
from .events import EventListener, StreamFactory, docker_event_stream
from .executor import JobExecutor
from .labels import ServiceScheduleConfig
from .reconciler import Action, JobReconciler
from .scheduler import TriggerScheduler

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        settings: Settings,
        client: docker.DockerClient,
        directory: Optional[ServiceDirectory] = None,
        stream_factory: Optional[StreamFactory] = None,
        scheduler: Optional[TriggerScheduler] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.directory = directory or ServiceDirectory(client)
        self.scheduler = scheduler or TriggerScheduler(
            tz=settings.timezone,
            grace_seconds=settings.shutdown_grace_seconds,
        )
        self.reconciler = JobReconciler(self.directory, self.scheduler, self._executor)
        self.listener = EventListener(self.reconciler, stream_factory or docker_event_stream(client))
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def _executor(self, service_id: str, service_name: str, config: ServiceScheduleConfig) -> Callable[[], Any]:
        return JobExecutor(
            self.directory,
            service_id,
            service_name,
            config,
            poll_interval=self.settings.poll_interval_seconds,
        )

    def bootstrap(self) -> Dict[Action, int]:
        """Subscribe to service events, then seed the registry from a full listing.

        Subscribing first means a change made during the listing still arrives
        as an event. Raises StreamFailure when the subscription fails.
        """
        self.listener.open()
        try:
            services = self.directory.list_scheduled()
        except ClusterError as exc:
            logger.error("Cannot retrieve scheduled services: %s", exc)
            services = []
        summary = self.reconciler.seed(services)
        logger.info(
            "Initial scan found %s scheduled service(s); %s job(s) registered",
            len(services),
            len(self.scheduler),
        )
        return summary

    def start(self) -> None:
        self.scheduler.start()

    def run_forever(self) -> None:
        """Block on the event stream until shutdown; StreamFailure propagates."""
        self.listener.run()

    def request_stop(self) -> None:
        """Ask the listener to return; safe to call from a signal handler."""
        self.listener.stop()

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        logger.info("Shutting down")
        self.listener.stop()
        self.scheduler.stop()
