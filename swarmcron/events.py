"""Docker service event listener."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

import docker

from .errors import ClusterError, ConfigError, DecodeError, StreamFailure
from .reconciler import Action, JobReconciler

logger = logging.getLogger(__name__)

SERVICE_EVENT_FILTERS = {"type": "service"}

StreamFactory = Callable[[], Iterable[Mapping[str, Any]]]


class EventAction(enum.Enum):
    CREATED = "create"
    UPDATED = "update"
    REMOVED = "remove"
    OTHER = "other"


EVENT_ACTIONS = {
    "create": EventAction.CREATED,
    "update": EventAction.UPDATED,
    "remove": EventAction.REMOVED,
}


@dataclass(frozen=True)
class ServiceEvent:
    service_id: str
    service_name: str
    action: EventAction
    update_state_new: str = ""
    update_state_old: str = ""


def decode_event(raw: Any) -> ServiceEvent:
    if not isinstance(raw, Mapping):
        raise DecodeError(f"event must be a mapping, got {type(raw).__name__}")
    actor = raw.get("Actor")
    if not isinstance(actor, Mapping):
        raise DecodeError("event has no Actor")
    service_id = actor.get("ID")
    if not isinstance(service_id, str) or not service_id:
        raise DecodeError("event Actor has no ID")
    attributes = actor.get("Attributes") or {}
    if not isinstance(attributes, Mapping):
        raise DecodeError("event Actor.Attributes must be a mapping")

    action = EventAction.OTHER
    event_type = raw.get("Type")
    if event_type in (None, "service"):
        action = EVENT_ACTIONS.get(str(raw.get("Action", "")).lower(), EventAction.OTHER)

    return ServiceEvent(
        service_id=service_id,
        service_name=str(attributes.get("name", "")),
        action=action,
        update_state_new=str(attributes.get("updatestate.new", "")),
        update_state_old=str(attributes.get("updatestate.old", "")),
    )


def docker_event_stream(client: docker.DockerClient) -> StreamFactory:
    def factory() -> Iterable[Mapping[str, Any]]:
        return client.events(decode=True, filters=SERVICE_EVENT_FILTERS)

    return factory


class EventListener:
    """Sequential consumer of the service event stream.

    A bad event is logged and skipped; a broken stream raises
    :class:`StreamFailure` because the registry can no longer follow the
    cluster.
    """

    def __init__(self, reconciler: JobReconciler, stream_factory: StreamFactory) -> None:
        self.reconciler = reconciler
        self.stream_factory = stream_factory
        self._stop_event = threading.Event()
        self._stream: Optional[Iterable[Mapping[str, Any]]] = None
        self._lock = threading.RLock()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def open(self) -> None:
        """Subscribe now; events queue up on the connection until run() reads them."""
        with self._lock:
            if self._stream is not None or self.stopped:
                return
            try:
                self._stream = self.stream_factory()
            except Exception as exc:
                raise StreamFailure(f"Cannot subscribe to service events: {exc}") from exc
        if self.stopped:
            self._close_stream()

    def run(self) -> None:
        if self.stopped:
            return
        self.open()
        with self._lock:
            stream = self._stream
        if stream is None:
            return

        logger.info("Listening for service events")
        iterator = iter(stream)
        try:
            while not self.stopped:
                try:
                    raw = next(iterator)
                except StopIteration:
                    break
                except Exception as exc:
                    if self.stopped:
                        return
                    raise StreamFailure(f"Event channel failed: {exc}") from exc
                self.handle(raw)
        finally:
            self._close_stream()

        if not self.stopped:
            raise StreamFailure("Event channel closed unexpectedly")
        logger.info("Event listener stopped")

    def handle(self, raw: Any) -> Optional[Action]:
        try:
            event = decode_event(raw)
        except DecodeError as exc:
            logger.warning("Cannot decode event, %s", exc, extra={"event": "decode_error"})
            return None

        extra = {"service_id": event.service_id, "service": event.service_name, "event": event.action.value}
        if event.action is EventAction.OTHER:
            logger.debug("Ignoring %s event for %s", raw.get("Action"), event.service_name, extra=extra)
            return None

        logger.debug(
            "Event triggered for %s (action=%s newstate='%s' oldstate='%s')",
            event.service_name,
            event.action.value,
            event.update_state_new,
            event.update_state_old,
            extra=extra,
        )
        try:
            action = self.reconciler.reconcile(event.service_id, event.service_name)
        except ConfigError as exc:
            logger.warning("Cannot manage job for service %s: %s", event.service_name, exc, extra=extra)
            return None
        except ClusterError as exc:
            logger.error("Cannot manage job for service %s: %s", event.service_name, exc, extra=extra)
            return None

        if action is not Action.NOOP:
            logger.debug("Number of cronjob tasks: %d", len(self.reconciler.scheduler))
        return action

    def stop(self) -> None:
        self._stop_event.set()
        self._close_stream()

    def _close_stream(self) -> None:
        with self._lock:
            stream = self._stream
            self._stream = None
        close = getattr(stream, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:
                logger.debug("Error closing event stream: %s", exc)
