"""
Scheduler Module State

Process-wide state of the scheduler, kept apart from the jobs:
- orthogonal state machines for the scheduler itself, observatory startup,
  shutdown, park waits and the Ekos and INDI connections
- bounded failure counters for the subsystems the scheduler drives
- preemptive shutdown wake time
- equipment profiles
- the timers pacing the scheduler's polling loop

Every setter notifies through a Signal, and only on an actual transition.
"""

import time
import logging
from datetime import datetime
from typing import Callable, List, Optional
from enum import IntEnum

from scheduler_config import Config
from scheduler_events import Signal

logger = logging.getLogger(__name__)


# ============================================================================
# Enumerations
# ============================================================================

class SchedulerState(IntEnum):
    """State of the scheduler itself"""
    IDLE = 0
    STARTUP = 1
    RUNNING = 2
    PAUSED = 3
    SHUTDOWN = 4
    ABORTED = 5
    LOADING = 6


class StartupState(IntEnum):
    """Observatory startup procedure"""
    IDLE = 0
    SCRIPT = 1
    UNPARK_DOME = 2
    UNPARKING_DOME = 3
    UNPARK_MOUNT = 4
    UNPARKING_MOUNT = 5
    UNPARK_CAP = 6
    UNPARKING_CAP = 7
    ERROR = 8
    COMPLETE = 9


class ShutdownState(IntEnum):
    """Observatory shutdown procedure"""
    IDLE = 0
    PARK_CAP = 1
    PARKING_CAP = 2
    PARK_MOUNT = 3
    PARKING_MOUNT = 4
    PARK_DOME = 5
    PARKING_DOME = 6
    SCRIPT = 7
    SCRIPT_RUNNING = 8
    ERROR = 9
    COMPLETE = 10


class ParkWaitState(IntEnum):
    """Waiting on mount or dome (un)parking"""
    IDLE = 0
    MOUNT = 1
    MOUNT_PARKING = 2
    MOUNT_UNPARKING = 3
    PARKED = 4
    DOME = 5
    DOME_PARKING = 6
    DOME_UNPARKING = 7
    ERROR = 8


class EkosState(IntEnum):
    IDLE = 0
    STARTING = 1
    STOPPING = 2
    READY = 3


class IndiState(IntEnum):
    IDLE = 0
    CONNECTING = 1
    DISCONNECTING = 2
    PROPERTY_CHECK = 3
    READY = 4


class SchedulerTimerState(IntEnum):
    """What the next scheduler iteration does"""
    IDLE = 0
    WAKEUP = 1
    EVALUATE_JOBS = 2
    RUN_SCHEDULER = 3
    STARTUP = 4
    SHUTDOWN = 5
    JOB_STARTUP = 6


# ============================================================================
# Timers
# ============================================================================

class CountdownTimer:
    """
    Single-shot countdown on a monotonic clock.

    There is no event loop behind it: the owner polls expired() and calls
    stop() once it has acted on the expiry.
    """

    def __init__(self, monotonic: Optional[Callable[[], float]] = None):
        self._monotonic = monotonic or time.monotonic
        self._deadline: Optional[float] = None
        self.interval_ms = 0

    def start(self, milliseconds: int):
        """(Re)start the countdown."""
        self.interval_ms = int(milliseconds)
        self._deadline = self._monotonic() + self.interval_ms / 1000.0

    def stop(self):
        self._deadline = None

    def remaining_ms(self) -> int:
        if self._deadline is None:
            return 0
        return max(0, int(round((self._deadline - self._monotonic()) * 1000.0)))

    def elapsed_ms(self) -> int:
        """Time counted down so far."""
        if self._deadline is None:
            return 0
        return self.interval_ms - self.remaining_ms()

    def is_active(self) -> bool:
        """True while counting down."""
        return self._deadline is not None and self._monotonic() < self._deadline

    def expired(self) -> bool:
        """True once the countdown reached zero and was not stopped."""
        return self._deadline is not None and self._monotonic() >= self._deadline


# ============================================================================
# Module State
# ============================================================================

class SchedulerModuleState:
    """State machines, counters and timers shared by the scheduling loop"""

    def __init__(self, config: Optional[Config] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 monotonic: Optional[Callable[[], float]] = None):
        self.config = config or Config()
        self._clock = clock
        self._monotonic = monotonic or time.monotonic

        # Notifications
        self.scheduler_state_changed = Signal("scheduler_state_changed")
        self.startup_state_changed = Signal("startup_state_changed")
        self.shutdown_state_changed = Signal("shutdown_state_changed")
        self.park_wait_state_changed = Signal("park_wait_state_changed")
        self.ekos_state_changed = Signal("ekos_state_changed")
        self.indi_state_changed = Signal("indi_state_changed")
        self.timer_state_changed = Signal("timer_state_changed")
        self.profiles_changed = Signal("profiles_changed")
        self.current_profile_changed = Signal("current_profile_changed")
        self.active_job_changed = Signal("active_job_changed")

        # States
        self._scheduler_state = SchedulerState.IDLE
        self._startup_state = StartupState.IDLE
        self._shutdown_state = ShutdownState.IDLE
        self._park_wait_state = ParkWaitState.IDLE
        self._ekos_state = EkosState.IDLE
        self._indi_state = IndiState.IDLE
        self._timer_state = SchedulerTimerState.IDLE

        # Jobs
        self.jobs: List = []
        self._active_job = None

        # Failure counters
        self._ekos_connect_failure_count = 0
        self._indi_connect_failure_count = 0
        self._focus_failure_count = 0
        self._guide_failure_count = 0
        self._align_failure_count = 0
        self._capture_failure_count = 0
        self._parking_cap_failure_count = 0
        self._parking_mount_failure_count = 0
        self._parking_dome_failure_count = 0

        # Preemptive shutdown, None when disabled
        self._preemptive_shutdown_wakeup_time: Optional[datetime] = None

        # Profiles
        self._profiles: List[str] = [self.config.DEFAULT_PROFILE]
        self._current_profile = self.config.DEFAULT_PROFILE

        # Timers
        self.iteration_timer = CountdownTimer(self._monotonic)
        self.guiding_timer = CountdownTimer(self._monotonic)
        self._timer_interval = -1
        self._iteration_setup = False
        self._current_operation_start: Optional[float] = None

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    @property
    def scheduler_state(self) -> SchedulerState:
        return self._scheduler_state

    @scheduler_state.setter
    def scheduler_state(self, state: SchedulerState):
        if self._scheduler_state != state:
            logger.info(f"Scheduler state changed from {self._scheduler_state.name} to {state.name}")
            self._scheduler_state = state
            self.scheduler_state_changed.emit(state)

    @property
    def startup_state(self) -> StartupState:
        return self._startup_state

    @startup_state.setter
    def startup_state(self, state: StartupState):
        if self._startup_state != state:
            self._startup_state = state
            self.startup_state_changed.emit(state)

    @property
    def shutdown_state(self) -> ShutdownState:
        return self._shutdown_state

    @shutdown_state.setter
    def shutdown_state(self, state: ShutdownState):
        if self._shutdown_state != state:
            self._shutdown_state = state
            self.shutdown_state_changed.emit(state)

    @property
    def park_wait_state(self) -> ParkWaitState:
        return self._park_wait_state

    @park_wait_state.setter
    def park_wait_state(self, state: ParkWaitState):
        if self._park_wait_state != state:
            self._park_wait_state = state
            self.park_wait_state_changed.emit(state)

    @property
    def ekos_state(self) -> EkosState:
        return self._ekos_state

    @ekos_state.setter
    def ekos_state(self, state: EkosState):
        if self._ekos_state != state:
            logger.debug(f"EKOS state changed from {self._ekos_state.name} to {state.name}")
            self._ekos_state = state
            self.ekos_state_changed.emit(state)

    @property
    def indi_state(self) -> IndiState:
        return self._indi_state

    @indi_state.setter
    def indi_state(self, state: IndiState):
        if self._indi_state != state:
            logger.debug(f"INDI state changed from {self._indi_state.name} to {state.name}")
            self._indi_state = state
            self.indi_state_changed.emit(state)

    @property
    def timer_state(self) -> SchedulerTimerState:
        return self._timer_state

    @timer_state.setter
    def timer_state(self, state: SchedulerTimerState):
        if self._timer_state != state:
            self._timer_state = state
            self.timer_state_changed.emit(state)

    @property
    def active_job(self):
        return self._active_job

    @active_job.setter
    def active_job(self, job):
        if self._active_job is not job:
            self._active_job = job
            self.active_job_changed.emit(job)

    # ------------------------------------------------------------------
    # Failure counters
    # ------------------------------------------------------------------

    def max_failure_attempts(self) -> int:
        return self.config.MAX_FAILURE_ATTEMPTS

    def _increase(self, counter: str) -> bool:
        """Count one more failure, True while retrying is still allowed."""
        attr = f"_{counter}_failure_count"
        count = getattr(self, attr) + 1
        setattr(self, attr, count)
        if count > self.max_failure_attempts():
            logger.warning(f"{counter.replace('_', ' ')} failed {count} times, giving up")
            return False
        return True

    def increase_ekos_connect_failure_count(self) -> bool:
        return self._increase("ekos_connect")

    def increase_indi_connect_failure_count(self) -> bool:
        return self._increase("indi_connect")

    def increase_focus_failure_count(self) -> bool:
        return self._increase("focus")

    def increase_guide_failure_count(self) -> bool:
        return self._increase("guide")

    def increase_align_failure_count(self) -> bool:
        return self._increase("align")

    def increase_capture_failure_count(self) -> bool:
        return self._increase("capture")

    def increase_parking_cap_failure_count(self) -> bool:
        return self._increase("parking_cap")

    def increase_parking_mount_failure_count(self) -> bool:
        return self._increase("parking_mount")

    def increase_parking_dome_failure_count(self) -> bool:
        return self._increase("parking_dome")

    def reset_ekos_connect_failure_count(self):
        self._ekos_connect_failure_count = 0

    def reset_indi_connect_failure_count(self):
        self._indi_connect_failure_count = 0

    def reset_focus_failure_count(self):
        self._focus_failure_count = 0

    def reset_guide_failure_count(self):
        self._guide_failure_count = 0

    def reset_align_failure_count(self):
        self._align_failure_count = 0

    def reset_capture_failure_count(self):
        self._capture_failure_count = 0

    def reset_parking_cap_failure_count(self):
        self._parking_cap_failure_count = 0

    def reset_parking_mount_failure_count(self):
        self._parking_mount_failure_count = 0

    def reset_parking_dome_failure_count(self):
        self._parking_dome_failure_count = 0

    def reset_failure_counters(self):
        """Zero the connection and job step counters. Parking counters are kept."""
        self.reset_indi_connect_failure_count()
        self.reset_ekos_connect_failure_count()
        self.reset_focus_failure_count()
        self.reset_guide_failure_count()
        self.reset_align_failure_count()
        self.reset_capture_failure_count()

    @property
    def ekos_connect_failure_count(self) -> int:
        return self._ekos_connect_failure_count

    @property
    def indi_connect_failure_count(self) -> int:
        return self._indi_connect_failure_count

    @property
    def focus_failure_count(self) -> int:
        return self._focus_failure_count

    @property
    def guide_failure_count(self) -> int:
        return self._guide_failure_count

    @property
    def align_failure_count(self) -> int:
        return self._align_failure_count

    @property
    def capture_failure_count(self) -> int:
        return self._capture_failure_count

    # ------------------------------------------------------------------
    # Preemptive shutdown
    # ------------------------------------------------------------------

    def enable_preemptive_shutdown(self, wakeup_time: datetime):
        """Shut the observatory down until `wakeup_time`."""
        self._preemptive_shutdown_wakeup_time = wakeup_time
        logger.info(f"Preemptive shutdown until {wakeup_time.isoformat()}")

    def disable_preemptive_shutdown(self):
        self._preemptive_shutdown_wakeup_time = None

    def preemptive_shutdown(self) -> bool:
        return self._preemptive_shutdown_wakeup_time is not None

    def preemptive_shutdown_wakeup_time(self) -> Optional[datetime]:
        return self._preemptive_shutdown_wakeup_time

    def preemptive_shutdown_due(self) -> bool:
        """True when a preemptive shutdown is pending and its wake time has come."""
        if self._preemptive_shutdown_wakeup_time is None or self._clock is None:
            return False
        return self._clock() >= self._preemptive_shutdown_wakeup_time

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    @property
    def profiles(self) -> List[str]:
        return list(self._profiles)

    @property
    def current_profile(self) -> str:
        return self._current_profile

    def update_profiles(self, names: List[str]):
        """
        Replace the profile list.

        The default profile always comes first. The current profile is kept
        when it is still in the list, otherwise the first profile is selected.
        """
        default = self.config.DEFAULT_PROFILE
        profiles = [default]
        for name in names:
            if name not in profiles:
                profiles.append(name)
        self._profiles = profiles
        self.profiles_changed.emit(self.profiles)

        self.set_current_profile(self._current_profile)

    def set_current_profile(self, name: str):
        """Select a profile, falling back to the first one when unknown."""
        if name not in self._profiles:
            name = self._profiles[0]
        if name != self._current_profile:
            self._current_profile = name
            self.current_profile_changed.emit(name)

    # ------------------------------------------------------------------
    # Iteration timer
    # ------------------------------------------------------------------

    @property
    def timer_interval(self) -> int:
        """Delay in milliseconds before the next iteration, -1 when unset."""
        return self._timer_interval

    @timer_interval.setter
    def timer_interval(self, milliseconds: int):
        self._timer_interval = milliseconds

    @property
    def iteration_setup(self) -> bool:
        """True when the next iteration is set up but not started yet."""
        return self._iteration_setup

    @iteration_setup.setter
    def iteration_setup(self, value: bool):
        self._iteration_setup = value

    def setup_next_iteration(self, next_state: SchedulerTimerState, milliseconds: Optional[int] = None):
        """
        Set the state and delay of the next scheduler iteration.

        If the iteration timer is already counting down, it is restarted with
        the new delay less the time already elapsed, so the iteration still
        happens at the requested wall-clock time.
        """
        if milliseconds is None:
            milliseconds = self.config.DEFAULT_UPDATE_PERIOD_MS

        if self._iteration_setup:
            logger.debug(f"Multiple setup_next_iteration calls: current {next_state.name} {milliseconds}, "
                         f"previous {self._timer_state.name} {self._timer_interval}")

        self.timer_state = next_state

        if self.iteration_timer.is_active():
            elapsed = self.iteration_timer.elapsed_ms()
            delay = max(0, milliseconds - elapsed)
            self.iteration_timer.start(delay)
            self._timer_interval = delay
        else:
            self._timer_interval = milliseconds

        self._iteration_setup = True

    def start_iteration_timer(self):
        """
        Start counting down the iteration that was set up.

        A timer that is already counting down was retargeted by
        `setup_next_iteration` and keeps running.
        """
        if self._iteration_setup:
            if not self.iteration_timer.is_active():
                self.iteration_timer.start(max(0, self._timer_interval))
            self._iteration_setup = False

    def iteration_due(self) -> bool:
        return self.iteration_timer.expired()

    # ------------------------------------------------------------------
    # Operation and guiding timers
    # ------------------------------------------------------------------

    def start_current_operation_timer(self):
        self._current_operation_start = self._monotonic()

    def current_operation_msec(self) -> int:
        """Milliseconds since the current operation started, 0 if none."""
        if self._current_operation_start is None:
            return 0
        return int((self._monotonic() - self._current_operation_start) * 1000.0)

    def start_guiding_timer(self, milliseconds: int):
        """Arm the delay before guiding is restarted."""
        self.guiding_timer.start(milliseconds)

    def cancel_guiding_timer(self):
        self.guiding_timer.stop()

    def is_guiding_timer_active(self) -> bool:
        return self.guiding_timer.is_active()
