"""Per-fire job executor: overlap policy plus the forced redeploy."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from .directory import RunState
from .errors import ClusterError
from .labels import ServiceScheduleConfig

logger = logging.getLogger(__name__)

UTC = timezone.utc
DEFAULT_POLL_SECONDS = 1.0

DECISION_RUN = "run"
DECISION_SKIP = "skip"


class Directory(Protocol):
    def get_run_state(self, service_id: str) -> RunState: ...

    def force_redeploy(self, service_id: str, replicas: Optional[int] = None) -> None: ...


@dataclass
class RunAttempt:
    run_id: str
    service_id: str
    service_name: str
    decision: str
    started_at: datetime
    ended_at: datetime
    run_state: Optional[RunState] = None
    success: Optional[bool] = None
    error: Optional[str] = None


class JobExecutor:
    """Callback bound into the scheduler for one service.

    The overlap policy is captured here, at registration time. A label change
    reaches the executor only when reconciliation replaces the registration.
    """

    def __init__(
        self,
        directory: Directory,
        service_id: str,
        service_name: str,
        config: ServiceScheduleConfig,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.service_id = service_id
        self.service_name = service_name
        self.config = config
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._monotonic = monotonic

    def __call__(self) -> None:
        self.run()

    def _log_extra(self, decision: str) -> dict:
        return {"service_id": self.service_id, "service": self.service_name, "decision": decision}

    def _wait_for_settle(self, run_id: str, timeout: timedelta) -> Optional[RunState]:
        """Return the run state once it is not active, or None on timeout."""
        deadline = self._monotonic() + timeout.total_seconds()
        while True:
            state = self.directory.get_run_state(self.service_id)
            if not state.is_active:
                return state
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return None
            logger.debug(
                "[%s] Service %s is %s; polling again (%.1fs left)",
                run_id,
                self.service_name,
                state.value,
                remaining,
            )
            self._sleep(min(self.poll_interval, remaining))

    def _overlap_state(self, run_id: str) -> Optional[RunState]:
        timeout = self.config.monitoring_timeout
        if timeout is None:
            return self.directory.get_run_state(self.service_id)
        state = self._wait_for_settle(run_id, timeout)
        if state is None:
            logger.warning(
                "[%s] Service %s did not settle within %s; treating it as not running",
                run_id,
                self.service_name,
                timeout,
                extra=self._log_extra(DECISION_RUN),
            )
        return state

    def run(self) -> RunAttempt:
        started = datetime.now(tz=UTC)
        run_id = f"{self.service_name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"
        state: Optional[RunState] = None

        if self.config.skip_running:
            try:
                state = self._overlap_state(run_id)
            except ClusterError as exc:
                logger.error(
                    "[%s] Cannot read run state of %s; skipping this fire: %s",
                    run_id,
                    self.service_name,
                    exc,
                    extra=self._log_extra(DECISION_SKIP),
                )
                return RunAttempt(
                    run_id=run_id,
                    service_id=self.service_id,
                    service_name=self.service_name,
                    decision=DECISION_SKIP,
                    started_at=started,
                    ended_at=datetime.now(tz=UTC),
                    error=str(exc),
                )
            if state is not None and state.is_active:
                logger.info(
                    "[%s] Skipping %s; previous run is still %s",
                    run_id,
                    self.service_name,
                    state.value,
                    extra=self._log_extra(DECISION_SKIP),
                )
                return RunAttempt(
                    run_id=run_id,
                    service_id=self.service_id,
                    service_name=self.service_name,
                    decision=DECISION_SKIP,
                    started_at=started,
                    ended_at=datetime.now(tz=UTC),
                    run_state=state,
                )

        logger.info(
            "[%s] Starting forced redeploy of %s (replicas=%s)",
            run_id,
            self.service_name,
            self.config.replicas,
            extra=self._log_extra(DECISION_RUN),
        )
        try:
            self.directory.force_redeploy(self.service_id, replicas=self.config.replicas)
        except ClusterError as exc:
            ended = datetime.now(tz=UTC)
            logger.error(
                "[%s] Forced redeploy of %s failed: %s",
                run_id,
                self.service_name,
                exc,
                extra=self._log_extra(DECISION_RUN),
            )
            return RunAttempt(
                run_id=run_id,
                service_id=self.service_id,
                service_name=self.service_name,
                decision=DECISION_RUN,
                started_at=started,
                ended_at=ended,
                run_state=state,
                success=False,
                error=str(exc),
            )

        ended = datetime.now(tz=UTC)
        logger.info(
            "[%s] Forced redeploy of %s completed in %.2fs",
            run_id,
            self.service_name,
            (ended - started).total_seconds(),
            extra=self._log_extra(DECISION_RUN),
        )
        return RunAttempt(
            run_id=run_id,
            service_id=self.service_id,
            service_name=self.service_name,
            decision=DECISION_RUN,
            started_at=started,
            ended_at=ended,
            run_state=state,
            success=True,
        )
