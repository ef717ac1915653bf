"""Cluster service directory backed by the Docker Engine API."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import ServiceMode
from requests.exceptions import RequestException

from .errors import ClusterError, ConflictError, ServiceNotFoundError, TransientClusterError
from .labels import LABEL_ENABLE, is_scheduled

logger = logging.getLogger(__name__)

UPDATING_STATES = {"updating", "rollback_started"}
TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$", re.ASCII)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RunState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_active(self) -> bool:
        return self in (RunState.PENDING, RunState.RUNNING)


TASK_STATES: Dict[str, RunState] = {
    "new": RunState.PENDING,
    "allocated": RunState.PENDING,
    "pending": RunState.PENDING,
    "assigned": RunState.PENDING,
    "accepted": RunState.PENDING,
    "preparing": RunState.PENDING,
    "ready": RunState.PENDING,
    "starting": RunState.PENDING,
    "running": RunState.RUNNING,
    "complete": RunState.COMPLETE,
    "failed": RunState.FAILED,
    "rejected": RunState.FAILED,
    "shutdown": RunState.FAILED,
    "orphaned": RunState.FAILED,
    "remove": RunState.FAILED,
}


@dataclass(frozen=True)
class ServiceDescriptor:
    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


def task_run_state(task: Dict[str, Any]) -> RunState:
    state = str((task.get("Status") or {}).get("State", "")).lower()
    return TASK_STATES.get(state, RunState.UNKNOWN)


def parse_timestamp(value: Any) -> datetime:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, trailing zeros trimmed)."""
    match = TIMESTAMP_RE.match(str(value or ""))
    if match is None:
        return EPOCH
    base, fraction, offset = match.groups()
    micros = (fraction or "").ljust(6, "0")[:6]
    try:
        return datetime.fromisoformat(f"{base}.{micros}{'+00:00' if offset == 'Z' else offset}")
    except ValueError:
        return EPOCH


def latest_task(tasks: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not tasks:
        return None
    return max(
        tasks,
        key=lambda task: (parse_timestamp(task.get("CreatedAt")), int((task.get("Version") or {}).get("Index", 0))),
    )


def _descriptor(service: Any) -> ServiceDescriptor:
    spec = service.attrs.get("Spec") or {}
    return ServiceDescriptor(
        id=service.id,
        name=str(spec.get("Name") or service.name),
        labels=dict(spec.get("Labels") or {}),
    )


def _cluster_error(exc: Exception, service_id: str, action: str) -> ClusterError:
    if isinstance(exc, NotFound):
        return ServiceNotFoundError(f"Service {service_id} not found during {action}", service_id)
    if isinstance(exc, APIError) and exc.status_code == 409:
        return ConflictError(f"Conflict during {action} of service {service_id}: {exc}", service_id)
    return TransientClusterError(f"Docker API error during {action} of service {service_id}: {exc}", service_id)


class ServiceDirectory:
    """Reads scheduled services and their run state, and issues forced redeploys."""

    def __init__(self, client: docker.DockerClient) -> None:
        self.client = client

    def list_scheduled(self) -> List[ServiceDescriptor]:
        try:
            services = self.client.services.list(filters={"label": LABEL_ENABLE})
        except (DockerException, RequestException) as exc:
            raise TransientClusterError(f"Cannot list scheduled services: {exc}") from exc
        descriptors = [_descriptor(service) for service in services]
        return [descriptor for descriptor in descriptors if is_scheduled(descriptor.labels)]

    def _service(self, service_id: str, action: str) -> Any:
        try:
            return self.client.services.get(service_id)
        except (DockerException, RequestException) as exc:
            raise _cluster_error(exc, service_id, action) from exc

    def get_service(self, service_id: str) -> ServiceDescriptor:
        return _descriptor(self._service(service_id, "inspect"))

    def get_run_state(self, service_id: str) -> RunState:
        service = self._service(service_id, "run state lookup")
        update_status = service.attrs.get("UpdateStatus") or {}
        if str(update_status.get("State", "")).lower() in UPDATING_STATES:
            return RunState.RUNNING
        try:
            tasks = service.tasks()
        except (DockerException, RequestException) as exc:
            raise _cluster_error(exc, service_id, "task listing") from exc
        task = latest_task(tasks)
        if task is None:
            return RunState.UNKNOWN
        return task_run_state(task)

    def force_redeploy(self, service_id: str, replicas: Optional[int] = None) -> None:
        service = self._service(service_id, "forced redeploy")
        kwargs: Dict[str, Any] = {"force_update": True, "fetch_current_spec": True}
        mode = (service.attrs.get("Spec") or {}).get("Mode") or {}
        if replicas is not None and "Replicated" in mode:
            kwargs["mode"] = ServiceMode("replicated", replicas=replicas)
        try:
            service.update(**kwargs)
        except (DockerException, RequestException) as exc:
            raise _cluster_error(exc, service_id, "forced redeploy") from exc
        logger.debug("Forced redeploy issued for service %s", service_id)
