from __future__ import annotations


class SwarmCronError(Exception):
    """Base error for swarmcron."""


class ConfigError(SwarmCronError):
    """Service label or settings validation error."""


class MissingScheduleError(ConfigError):
    pass


class InvalidScheduleError(ConfigError):
    pass


class InvalidLabelError(ConfigError):
    pass


class SettingsError(ConfigError):
    pass


class ClusterError(SwarmCronError):
    """A single Docker API call failed."""

    def __init__(self, message: str, service_id: str = "") -> None:
        self.service_id = service_id
        super().__init__(message)


class ServiceNotFoundError(ClusterError):
    pass


class ConflictError(ClusterError):
    pass


class TransientClusterError(ClusterError):
    pass


class DecodeError(SwarmCronError):
    """A single event payload could not be decoded."""


class StreamFailure(SwarmCronError):
    """The event subscription itself broke."""


class SchedulerError(SwarmCronError):
    pass


class DuplicateJobError(SchedulerError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job already registered: {job_id}")
