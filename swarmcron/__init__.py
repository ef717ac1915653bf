"""Wake up dormant Docker Swarm services on cron schedules declared in their labels."""

__version__ = "1.0.0"
