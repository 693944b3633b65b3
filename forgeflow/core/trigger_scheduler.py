"""Recurring trigger scheduler and injectable timer registries."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ..models.core import StepType, TimerConfig, TimerMode, WEEKDAY_NAMES, Workflow
from .exceptions import TimerMisconfigured
from .logging import get_logger

logger = get_logger(__name__)

# Weekly mode without an explicit clock fires at this time.
WEEKLY_DEFAULT_CLOCK = (9, 0)

TriggerCallback = Callable[[str, str], None]


def _weekday_index(moment: datetime) -> int:
    """Index into WEEKDAY_NAMES (Sunday first)."""
    return (moment.weekday() + 1) % 7


def should_run_now(config: TimerConfig, now: datetime) -> bool:
    """True when the wall clock matches the configured target to the minute."""
    clock = (now.hour, now.minute)
    if config.mode == TimerMode.DAILY:
        return config.clock is not None and clock == config.clock
    if config.mode == TimerMode.WEEKLY:
        return (config.day_of_week is not None
                and _weekday_index(now) == WEEKDAY_NAMES.index(config.day_of_week)
                and clock == WEEKLY_DEFAULT_CLOCK)
    if config.mode == TimerMode.COMBINED:
        return (config.clock is not None and config.day_of_week is not None
                and _weekday_index(now) == WEEKDAY_NAMES.index(config.day_of_week)
                and clock == config.clock)
    return False


def calculate_next_run(config: TimerConfig, now: datetime) -> datetime:
    """Next expected fire time; one hour ahead when the config cannot say."""
    if config.mode == TimerMode.INTERVAL and config.interval_hours:
        return now + timedelta(hours=config.interval_hours)

    if config.mode == TimerMode.DAILY and config.clock:
        hour, minute = config.clock
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if config.mode in (TimerMode.WEEKLY, TimerMode.COMBINED) and config.day_of_week:
        if config.mode == TimerMode.COMBINED and not config.clock:
            return now + timedelta(hours=1)
        hour, minute = config.clock if config.mode == TimerMode.COMBINED else WEEKLY_DEFAULT_CLOCK
        target_day = WEEKDAY_NAMES.index(config.day_of_week)
        days_until = (target_day - _weekday_index(now)) % 7
        candidate = (now + timedelta(days=days_until)).replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    return now + timedelta(hours=1)


def validate_timer_config(config: TimerConfig, step_id: Optional[str] = None) -> None:
    """
    Check that a config carries the parameters its mode needs.

    Raises:
        TimerMisconfigured: If a mode-specific parameter is missing
    """
    if config.mode == TimerMode.INTERVAL and not (config.interval_hours and config.interval_hours > 0):
        raise TimerMisconfigured("Interval trigger needs a positive interval_hours", node_id=step_id)
    if config.mode == TimerMode.DAILY and not config.time:
        raise TimerMisconfigured("Daily trigger needs a time (HH:MM)", node_id=step_id)
    if config.mode == TimerMode.WEEKLY and not config.day_of_week:
        raise TimerMisconfigured("Weekly trigger needs a day_of_week", node_id=step_id)
    if config.mode == TimerMode.COMBINED and not (config.time and config.day_of_week):
        raise TimerMisconfigured("Combined trigger needs both time and day_of_week", node_id=step_id)


# Timer registries -----------------------------------------------------------


class TimerHandle:
    """Cancellation handle for a repeating timer."""

    def __init__(self, period: float, callback: Callable[[], None]):
        self.period = period
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class TimerRegistry:
    """Creates repeating timers. Subclasses decide how time passes."""

    def schedule_repeating(self, period_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    def shutdown(self):
        """Cancel every timer created by this registry."""


class _ThreadingHandle(TimerHandle):

    def __init__(self, period: float, callback: Callable[[], None]):
        super().__init__(period, callback)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="forgeflow-timer", daemon=True)

    def start(self):
        self._thread.start()

    def _loop(self):
        while not self._stop.wait(self.period):
            try:
                self.callback()
            except Exception:
                logger.error("Timer callback raised", exc_info=True)

    def cancel(self):
        super().cancel()
        self._stop.set()


class ThreadingTimerRegistry(TimerRegistry):
    """Production registry: one daemon thread per repeating timer."""

    def __init__(self):
        self._handles: List[_ThreadingHandle] = []
        self._lock = threading.Lock()

    def schedule_repeating(self, period_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ThreadingHandle(period_seconds, callback)
        with self._lock:
            self._handles = [h for h in self._handles if not h.cancelled]
            self._handles.append(handle)
        handle.start()
        return handle

    def shutdown(self):
        with self._lock:
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()


class ManualTimerRegistry(TimerRegistry):
    """Deterministic registry: time only passes when ``advance`` is called."""

    def __init__(self):
        self.timers: List[Tuple[TimerHandle, float]] = []  # (handle, seconds until next fire)

    def schedule_repeating(self, period_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(period_seconds, callback)
        self.timers.append((handle, period_seconds))
        return handle

    @property
    def active(self) -> List[TimerHandle]:
        return [handle for handle, _ in self.timers if not handle.cancelled]

    def advance(self, seconds: float) -> int:
        """Let ``seconds`` pass, firing every due callback. Returns the number of fires."""
        fired = 0
        updated = []
        for handle, remaining in self.timers:
            if handle.cancelled:
                continue
            remaining -= seconds
            while remaining <= 0 and not handle.cancelled:
                handle.callback()
                fired += 1
                remaining += handle.period
            updated.append((handle, remaining))
        self.timers = updated
        return fired

    def shutdown(self):
        for handle, _ in self.timers:
            handle.cancel()
        self.timers = []


# Scheduler ------------------------------------------------------------------


@dataclass
class TriggerSchedule:
    """Runtime schedule derived from one trigger step's config."""
    workflow_id: str
    step_id: str
    config: TimerConfig
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    handle: Optional[TimerHandle] = field(default=None, repr=False)
    _last_fired_minute: Optional[Tuple[int, int, int, int, int]] = field(default=None, repr=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.workflow_id, self.step_id)

    def to_dict(self) -> Dict[str, object]:
        return {
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "mode": self.config.mode.value,
            "config": self.config.model_dump(mode="json"),
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


class TriggerScheduler:
    """
    Holds one schedule per (workflow, trigger step) and invokes the trigger
    callback when a schedule is due.

    Interval mode uses a repeating timer at the exact period. Daily, weekly and
    combined modes poll every ``poll_seconds`` and compare the wall clock to
    the target minute; missed minutes are not caught up.
    """

    def __init__(
        self,
        registry: Optional[TimerRegistry] = None,
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry or ThreadingTimerRegistry()
        self.poll_seconds = poll_seconds
        self.clock = clock
        self._schedules: Dict[Tuple[str, str], TriggerSchedule] = {}
        self._callback: Optional[TriggerCallback] = None
        self._lock = threading.RLock()

    def set_trigger_callback(self, callback: TriggerCallback):
        self._callback = callback

    def add_schedule(self, workflow_id: str, step_id: str, config: TimerConfig) -> Optional[TriggerSchedule]:
        """
        Create (or replace) the schedule for a trigger step.

        A disabled config only removes any existing schedule.

        Raises:
            TimerMisconfigured: If the config lacks its mode's parameters
        """
        self.remove_schedule(workflow_id, step_id)
        if not config.enabled:
            return None
        validate_timer_config(config, step_id)

        schedule = TriggerSchedule(workflow_id, step_id, config, next_run=calculate_next_run(config, self.clock()))
        if config.mode == TimerMode.INTERVAL:
            period = config.interval_hours * 3600
            schedule.handle = self.registry.schedule_repeating(period, lambda: self._fire_interval(schedule))
        else:
            schedule.handle = self.registry.schedule_repeating(self.poll_seconds, lambda: self.poll(schedule))

        with self._lock:
            self._schedules[schedule.key] = schedule
        logger.info(f"Scheduled {config.mode.value} trigger {workflow_id}/{step_id}, next run {schedule.next_run}")
        return schedule

    def remove_schedule(self, workflow_id: str, step_id: str) -> bool:
        with self._lock:
            schedule = self._schedules.pop((workflow_id, step_id), None)
        if schedule is None:
            return False
        if schedule.handle:
            schedule.handle.cancel()
        logger.info(f"Removed trigger {workflow_id}/{step_id}")
        return True

    def remove_workflow(self, workflow_id: str) -> int:
        keys = [key for key in self.schedule_keys() if key[0] == workflow_id]
        for key in keys:
            self.remove_schedule(*key)
        return len(keys)

    def clear_all(self):
        for key in self.schedule_keys():
            self.remove_schedule(*key)
        self.registry.shutdown()

    def schedule_keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._schedules.keys())

    def get_schedules(self) -> List[TriggerSchedule]:
        with self._lock:
            return list(self._schedules.values())

    def get_schedule(self, workflow_id: str, step_id: str) -> Optional[TriggerSchedule]:
        with self._lock:
            return self._schedules.get((workflow_id, step_id))

    def sync_workflow(self, workflow: Workflow) -> List[str]:
        """
        Bring the schedules of a workflow in line with its trigger steps.

        Schedules of removed or disabled steps are dropped; enabled steps are
        (re)scheduled. Misconfigured steps are skipped.

        Returns:
            Error messages for trigger steps that could not be scheduled
        """
        timer_steps = {step.id: step for step in workflow.steps_of_type(StepType.TRIGGER_TIMER)}
        for workflow_id, step_id in self.schedule_keys():
            if workflow_id == workflow.id and step_id not in timer_steps:
                self.remove_schedule(workflow_id, step_id)

        errors = []
        for step in timer_steps.values():
            try:
                self.add_schedule(workflow.id, step.id, TimerConfig.from_step_config(step.config))
            except TimerMisconfigured as e:
                logger.warning(f"Trigger {workflow.id}/{step.id} not scheduled: {e.message}")
                errors.append(f"{step.id}: {e.message}")
            except ValueError as e:
                logger.warning(f"Trigger {workflow.id}/{step.id} has an invalid config: {e}")
                errors.append(f"{step.id}: {e}")
        return errors

    def poll(self, schedule: TriggerSchedule, now: Optional[datetime] = None) -> bool:
        """Check a clock-based schedule against the wall clock; fire on a matching minute."""
        now = now or self.clock()
        if not should_run_now(schedule.config, now):
            return False
        minute = (now.year, now.month, now.day, now.hour, now.minute)
        if schedule._last_fired_minute == minute:
            return False
        schedule._last_fired_minute = minute
        self._fire(schedule, now)
        schedule.next_run = calculate_next_run(schedule.config, now)
        return True

    def _fire_interval(self, schedule: TriggerSchedule):
        now = self.clock()
        self._fire(schedule, now)
        schedule.next_run = now + timedelta(hours=schedule.config.interval_hours)

    def _fire(self, schedule: TriggerSchedule, now: datetime):
        schedule.last_run = now
        logger.info(f"Triggering workflow {schedule.workflow_id} from timer step {schedule.step_id}")
        if self._callback is None:
            logger.warning("Trigger fired but no trigger callback is registered")
            return
        self._callback(schedule.workflow_id, schedule.step_id)
