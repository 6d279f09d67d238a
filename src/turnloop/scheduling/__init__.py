"""Step and wall-clock triggers."""

from turnloop.scheduling.scheduler import Scheduler, StepTask
from turnloop.scheduling.time_bridge import TimeBridge, next_daily, parse_daily_cron

__all__ = ["Scheduler", "StepTask", "TimeBridge", "next_daily", "parse_daily_cron"]
