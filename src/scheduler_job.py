"""
Scheduler Job

An observation job: target, observing constraints, startup and completion
conditions, lifecycle state and capture progress. The job answers the two
questions the scheduling loop keeps asking: when can it next start, and
when will it have to stop.

All times are timezone-aware datetimes. The job is bound to a
ConstraintEvaluator which carries the astronomical context.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from enum import Flag, IntEnum

from scheduler_astro import TargetCoords, datetime_to_jd, ensure_utc
from scheduler_cache import StartTimeCache
from scheduler_constraints import ConstraintEvaluator
from scheduler_events import Signal

logger = logging.getLogger(__name__)


UNDEFINED_ALTITUDE = -90
UNDEFINED_MOON_SEPARATION = -1


# ============================================================================
# Enumerations
# ============================================================================

class JobStatus(IntEnum):
    """Lifecycle state of a job"""
    IDLE = 0        # just created, not evaluated yet
    EVALUATION = 1  # being evaluated
    SCHEDULED = 2   # evaluated, has a schedule
    BUSY = 3        # being processed
    ERROR = 4       # fatal issue, must be reset manually
    ABORTED = 5     # transitory issue, will be rescheduled
    INVALID = 6     # incorrect configuration
    COMPLETE = 7    # finished all required captures


class JobStage(IntEnum):
    """Running stage of a busy job"""
    IDLE = 0
    SLEWING = 1
    SLEW_COMPLETE = 2
    FOCUSING = 3
    FOCUS_COMPLETE = 4
    ALIGNING = 5
    ALIGN_COMPLETE = 6
    RESLEWING = 7
    RESLEWING_COMPLETE = 8
    POSTALIGN_FOCUSING = 9
    POSTALIGN_FOCUSING_COMPLETE = 10
    GUIDING = 11
    GUIDING_COMPLETE = 12
    CAPTURING = 13
    COMPLETE = 14


class StartupCondition(IntEnum):
    """Conditions under which a job may start"""
    ASAP = 0
    AT = 2


class CompletionCondition(IntEnum):
    """Conditions under which a job completes"""
    SEQUENCE = 0
    REPEAT = 1
    LOOP = 2
    AT = 3


class StepPipeline(Flag):
    """Actions to process when running a job"""
    NONE = 0
    TRACK = 1
    FOCUS = 2
    ALIGN = 4
    GUIDE = 8


JOB_STATUS_STRINGS = {
    JobStatus.IDLE: "Idle",
    JobStatus.EVALUATION: "Evaluating",
    JobStatus.SCHEDULED: "Scheduled",
    JobStatus.BUSY: "Running",
    JobStatus.ERROR: "Error",
    JobStatus.ABORTED: "Aborted",
    JobStatus.INVALID: "Invalid",
    JobStatus.COMPLETE: "Complete",
}

JOB_STAGE_STRINGS = {
    JobStage.IDLE: "Idle",
    JobStage.SLEWING: "Slewing",
    JobStage.SLEW_COMPLETE: "Slew complete",
    JobStage.FOCUSING: "Focusing",
    JobStage.FOCUS_COMPLETE: "Focus complete",
    JobStage.ALIGNING: "Aligning",
    JobStage.ALIGN_COMPLETE: "Align complete",
    JobStage.RESLEWING: "Repositioning",
    JobStage.RESLEWING_COMPLETE: "Repositioning complete",
    JobStage.POSTALIGN_FOCUSING: "Post-alignment focusing",
    JobStage.POSTALIGN_FOCUSING_COMPLETE: "Post-alignment focusing complete",
    JobStage.GUIDING: "Guiding",
    JobStage.GUIDING_COMPLETE: "Guiding complete",
    JobStage.CAPTURING: "Capturing",
    JobStage.COMPLETE: "Complete",
}

STARTUP_CONDITION_STRINGS = {
    StartupCondition.ASAP: "ASAP",
    StartupCondition.AT: "AT",
}

COMPLETION_CONDITION_STRINGS = {
    CompletionCondition.SEQUENCE: "FINISH",
    CompletionCondition.REPEAT: "REPEAT",
    CompletionCondition.LOOP: "LOOP",
    CompletionCondition.AT: "AT",
}

# Jobs in these states are not searched until reset or re-evaluated
NON_CANDIDATE_STATES = (JobStatus.ABORTED, JobStatus.INVALID, JobStatus.ERROR)


class JobRecordError(ValueError):
    """Raised when a job record cannot be turned into a job"""


class _ConstraintAttribute:
    """Job attribute whose change invalidates the cached start times"""

    def __set_name__(self, owner, name):
        self.attr = '_' + name

    def __get__(self, job, owner=None):
        if job is None:
            return self
        return getattr(job, self.attr)

    def __set__(self, job, value):
        if getattr(job, self.attr, None) != value:
            setattr(job, self.attr, value)
            job.clear_cache()
            job._notify()


# ============================================================================
# Scheduler Job
# ============================================================================

class SchedulerJob:
    """One observation job and its scheduling state"""

    min_altitude = _ConstraintAttribute()
    min_moon_separation = _ConstraintAttribute()
    enforce_weather = _ConstraintAttribute()
    enforce_twilight = _ConstraintAttribute()
    enforce_artificial_horizon = _ConstraintAttribute()
    file_startup_condition = _ConstraintAttribute()

    def __init__(self, evaluator: ConstraintEvaluator, name: str = "", group: str = ""):
        self.evaluator = evaluator
        self.config = evaluator.config
        self.changed = Signal("job.changed")

        # Ordinary and running-job start time queries are memoized apart
        horizon = timedelta(minutes=self.config.MAX_SEARCH_MINUTES)
        self.start_time_cache = StartTimeCache(horizon)
        self.running_start_time_cache = StartTimeCache(horizon, exact_bounds=True)

        # Identity
        self.name = name
        self.group = group
        self.sequence_file = ""
        self.fits_file = ""

        # Target
        self._target = TargetCoords()
        self.position_angle = -1.0

        # Constraints
        self._min_altitude = UNDEFINED_ALTITUDE
        self._min_moon_separation = UNDEFINED_MOON_SEPARATION
        self._enforce_weather = False
        self._enforce_twilight = False
        self._enforce_artificial_horizon = False

        # Pipeline
        self.step_pipeline = StepPipeline.NONE
        self.in_sequence_focus = False
        self.light_frames_required = False
        self.initial_filter = ""

        # Lifecycle
        self._state = JobStatus.IDLE
        self._stage = JobStage.IDLE
        self.state_time: Optional[datetime] = None
        self.last_abort_time: Optional[datetime] = None
        self.last_error_time: Optional[datetime] = None

        # Timing
        self._file_startup_condition = StartupCondition.ASAP
        self._file_startup_time: Optional[datetime] = None
        self._startup_condition = StartupCondition.ASAP
        self._startup_time: Optional[datetime] = None
        self._completion_condition = CompletionCondition.SEQUENCE
        self._completion_time: Optional[datetime] = None
        self.greedy_completion_time: Optional[datetime] = None
        self.stop_reason = ""
        self.dawn: Optional[datetime] = None
        self.dusk: Optional[datetime] = None

        # Display caches
        self.altitude_at_startup = 0.0
        self.is_setting_at_startup = False
        self.altitude_at_completion = 0.0
        self.is_setting_at_completion = False

        # Estimates, seconds
        self._estimated_time = -1
        self.estimated_time_per_repeat = 0
        self.estimated_startup_time = 0
        self.estimated_time_left_this_repeat = 0

        # Progress
        self._repeats_required = 1
        self._repeats_remaining = 1
        self.completed_iterations = 0
        self.sequence_count = 0
        self.completed_count = 0
        self.captured_frames_map: Dict[str, int] = {}

    def __repr__(self):
        return (f"SchedulerJob({self.name!r}, state={self.state.name}, "
                f"startup={self._startup_time}, completion={self._completion_time})")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def context(self):
        return self.evaluator.context

    def _now(self) -> datetime:
        return self.context.now()

    def _notify(self):
        self.changed.emit(self)

    def clear_cache(self):
        """Forget cached start times. Call when geography, horizon or constraints change."""
        self.start_time_cache.clear()
        self.running_start_time_cache.clear()

    # ------------------------------------------------------------------
    # Target
    # ------------------------------------------------------------------

    @property
    def target(self) -> TargetCoords:
        return self._target

    @target.setter
    def target(self, coords: TargetCoords):
        self._target = coords
        self.clear_cache()
        self._notify()

    def set_target_coords(self, ra: float, dec: float, jd: Optional[float] = None):
        """
        Set J2000 coordinates, deriving the epoch-of-date position at `jd`,
        or at the current time of the context when `jd` is not given.
        """
        if jd is None:
            jd = datetime_to_jd(self._now())
        self.target = TargetCoords.from_j2000(ra, dec, jd)

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def has_min_altitude(self) -> bool:
        return UNDEFINED_ALTITUDE < self._min_altitude

    def has_min_moon_separation(self) -> bool:
        return 0 < self._min_moon_separation

    def has_altitude_constraint(self) -> bool:
        """Whether any altitude constraint applies: min altitude, horizon or mount limits."""
        config = self.config
        horizon = self.context.horizon
        return (self.has_min_altitude()
                or (self._enforce_artificial_horizon and horizon is not None
                    and horizon.altitude_constraints_exist())
                or (config.ENABLE_ALTITUDE_LIMITS
                    and (config.MIN_MOUNT_ALTITUDE > 0 or config.MAX_MOUNT_ALTITUDE < 90)))

    def is_duplicate_of(self, other: "SchedulerJob") -> bool:
        """Different job object with the same name and sequence file."""
        return self is not other and self.name == other.name and self.sequence_file == other.sequence_file

    # ------------------------------------------------------------------
    # State and stage
    # ------------------------------------------------------------------

    @property
    def state(self) -> JobStatus:
        return self._state

    @state.setter
    def state(self, value: JobStatus):
        """
        Change the state.

        ABORTED, INVALID and IDLE restore the authored startup condition and
        time; INVALID and IDLE also drop the duration estimate. ABORTED,
        INVALID and ERROR forget cached start times.
        """
        self._state = value
        now = self._now()
        self.state_time = now

        if value == JobStatus.ERROR:
            self.last_error_time = now
            logger.warning(f"Job {self.name} is in error")

        if value == JobStatus.ABORTED:
            self.last_abort_time = now
            self._restore_authored_startup()

        if value in (JobStatus.INVALID, JobStatus.IDLE):
            self._restore_authored_startup()
            self.estimated_time = -1

        if value in NON_CANDIDATE_STATES:
            self.clear_cache()

        self._notify()

    @property
    def stage(self) -> JobStage:
        return self._stage

    @stage.setter
    def stage(self, value: JobStage):
        self._stage = value
        self._notify()

    @property
    def status_string(self) -> str:
        return JOB_STATUS_STRINGS[self._state]

    @property
    def stage_string(self) -> str:
        return JOB_STAGE_STRINGS[self._stage]

    def is_search_candidate(self) -> bool:
        return self._state not in NON_CANDIDATE_STATES

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    @property
    def file_startup_time(self) -> Optional[datetime]:
        return self._file_startup_time

    @file_startup_time.setter
    def file_startup_time(self, value: Optional[datetime]):
        self._file_startup_time = ensure_utc(value) if value is not None else None
        self.clear_cache()
        self._notify()

    @property
    def startup_condition(self) -> StartupCondition:
        return self._startup_condition

    @startup_condition.setter
    def startup_condition(self, value: StartupCondition):
        self._startup_condition = value
        # ASAP jobs have no startup time
        if value == StartupCondition.ASAP:
            self._startup_time = None
        self._refresh_estimates()
        self.calculate_dawn_dusk(self._startup_time)
        self._notify()

    @property
    def startup_time(self) -> Optional[datetime]:
        return self._startup_time

    @startup_time.setter
    def startup_time(self, value: Optional[datetime]):
        if value is not None:
            self._startup_time = ensure_utc(value)
            self._startup_condition = StartupCondition.AT
            self.altitude_at_startup, self.is_setting_at_startup = \
                self.evaluator.altitude(self._target, self._startup_time)
        else:
            self._startup_time = None
            self._startup_condition = self._file_startup_condition
        self._refresh_estimates()
        self.calculate_dawn_dusk(self._startup_time)
        self._notify()

    def _restore_authored_startup(self):
        if self._file_startup_condition == StartupCondition.AT and self._file_startup_time is not None:
            self.startup_time = self._file_startup_time
        else:
            self.startup_condition = self._file_startup_condition

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    @property
    def completion_condition(self) -> CompletionCondition:
        return self._completion_condition

    @completion_condition.setter
    def completion_condition(self, value: CompletionCondition):
        self._completion_condition = value

        # Keep repeats compatible, looping and timed jobs have none
        if value == CompletionCondition.LOOP:
            self._completion_time = None
            self._estimated_time = -1
        if value in (CompletionCondition.LOOP, CompletionCondition.AT):
            if self._repeats_required > 0:
                self.repeats_required = 0
        elif value == CompletionCondition.SEQUENCE:
            if self._repeats_required != 1:
                self.repeats_required = 1
        elif value == CompletionCondition.REPEAT:
            if self._repeats_required == 0:
                self.repeats_required = 1

        self.clear_cache()
        self._notify()

    @property
    def completion_time(self) -> Optional[datetime]:
        return self._completion_time

    @completion_time.setter
    def completion_time(self, value: Optional[datetime]):
        """
        Set the completion time.

        A valid time switches the job to FINISH_AT. An empty time keeps a
        looping job open-ended, otherwise completion is deduced from startup
        time and estimated duration.
        """
        self.greedy_completion_time = None

        if value is not None:
            value = ensure_utc(value)
            if self._completion_condition != CompletionCondition.AT:
                self.completion_condition = CompletionCondition.AT
            self._completion_time = value
            self._update_completion_altitude()
            self.estimated_time = -1
        elif self._completion_condition == CompletionCondition.LOOP:
            self._completion_time = None
            self._estimated_time = -1
        elif self._startup_time is not None and self._estimated_time >= 0:
            self._completion_time = self._startup_time + timedelta(seconds=self._estimated_time)
            self._update_completion_altitude()
        else:
            self._completion_time = None

        self.clear_cache()
        self._notify()

    def _update_completion_altitude(self):
        if self._completion_time is not None:
            self.altitude_at_completion, self.is_setting_at_completion = \
                self.evaluator.altitude(self._target, self._completion_time)

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------

    @property
    def estimated_time(self) -> int:
        return self._estimated_time

    @estimated_time.setter
    def estimated_time(self, value: int):
        """
        Store the duration estimate in seconds, -1 when not estimated.

        Fixed startup and completion times determine the duration. A fixed
        startup time alone moves the completion time along with the estimate.
        """
        fixed_start = self._file_startup_condition == StartupCondition.AT and self._startup_time is not None
        fixed_end = self._completion_condition == CompletionCondition.AT and self._completion_time is not None

        if fixed_start and fixed_end:
            self._estimated_time = int((self._completion_time - self._startup_time).total_seconds())
        elif fixed_start and value >= 0 and self._completion_condition != CompletionCondition.LOOP:
            self._estimated_time = value
            self._completion_time = self._startup_time + timedelta(seconds=value)
        else:
            self._estimated_time = value
        self._notify()

    def _refresh_estimates(self):
        self.estimated_time = self._estimated_time

    # ------------------------------------------------------------------
    # Repeats
    # ------------------------------------------------------------------

    @property
    def repeats_required(self) -> int:
        return self._repeats_required

    @repeats_required.setter
    def repeats_required(self, value: int):
        if value < 0:
            raise ValueError(f"repeats required must be positive or zero, got {value}")
        # A job that has not started a repeat yet gets the full new budget
        if self._repeats_remaining == self._repeats_required:
            self._repeats_remaining = value
        else:
            self._repeats_remaining = min(self._repeats_remaining, value)
        self._repeats_required = value

        # Keep the completion condition compatible
        if value > 1:
            if self._completion_condition != CompletionCondition.REPEAT:
                self.completion_condition = CompletionCondition.REPEAT
        elif value == 1:
            if self._completion_condition != CompletionCondition.SEQUENCE:
                self.completion_condition = CompletionCondition.SEQUENCE
        elif self._completion_condition not in (CompletionCondition.LOOP, CompletionCondition.AT):
            self.completion_condition = CompletionCondition.LOOP
        self._notify()

    @property
    def repeats_remaining(self) -> int:
        return self._repeats_remaining

    @repeats_remaining.setter
    def repeats_remaining(self, value: int):
        if not (0 <= value <= self._repeats_required):
            raise ValueError(f"repeats remaining {value} outside [0, {self._repeats_required}]")
        self._repeats_remaining = value
        self._notify()

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset(self):
        """
        Return the job to its original values: idle state and stage, authored
        startup, no duration estimate, full repeat count.
        """
        self._state = JobStatus.IDLE
        self._stage = JobStage.IDLE
        self.state_time = self._now()
        self.last_abort_time = None
        self.last_error_time = None

        self._estimated_time = -1
        self.estimated_time_per_repeat = 0
        self.estimated_startup_time = 0
        self.estimated_time_left_this_repeat = 0

        self._startup_condition = self._file_startup_condition
        if self._file_startup_condition == StartupCondition.AT:
            self._startup_time = self._file_startup_time
        else:
            self._startup_time = None
        self.calculate_dawn_dusk(self._startup_time)

        self.greedy_completion_time = None
        self.stop_reason = ""

        self._repeats_remaining = self._repeats_required
        self.completed_iterations = 0
        self.clear_cache()
        self._notify()

    # ------------------------------------------------------------------
    # Twilight
    # ------------------------------------------------------------------

    def calculate_dawn_dusk(self, when: Optional[datetime] = None):
        """Refresh the next astronomical dawn and dusk after `when` (now if omitted)."""
        self.dawn, self.dusk = self.context.dawn_dusk_after(when if when is not None else self._now())

    def runs_during_astronomical_night(self, time: Optional[datetime] = None) -> Tuple[bool, Optional[datetime]]:
        """
        Whether the job runs in the astronomical night.

        Uses `time`, or the job's startup time and its precomputed dawn and
        dusk when omitted.

        Returns:
            (night, next_possible_success)
        """
        night, _, next_success = self._runs_during_astronomical_night_internal(time)
        return night, next_success

    def _runs_during_astronomical_night_internal(self, time: Optional[datetime]):
        if time is not None:
            return self.evaluator.runs_during_astronomical_night(ensure_utc(time))
        reference = self._startup_time if self._startup_time is not None else self._now()
        if self.dawn is None and self.dusk is None:
            return self.evaluator.runs_during_astronomical_night(reference)
        return self.evaluator.runs_during_astronomical_night(reference, self.dawn, self.dusk)

    # ------------------------------------------------------------------
    # Moon
    # ------------------------------------------------------------------

    def current_moon_separation(self, when: Optional[datetime] = None) -> float:
        return self.evaluator.current_moon_separation(self, when if when is not None else self._now())

    def moon_separation_score(self, when: Optional[datetime] = None) -> int:
        return self.evaluator.moon_separation_score(self, when if when is not None else self._now())

    # ------------------------------------------------------------------
    # Time search
    # ------------------------------------------------------------------

    def calculate_next_time(self, when: datetime, check_if_constraints_are_met: bool = True,
                            increment: int = 1, until: Optional[datetime] = None,
                            running_job: bool = False) -> Tuple[Optional[datetime], str]:
        """
        Find the next time the constraints are met, or violated.

        Steps forward from `when` by `increment` minutes, up to `until` and
        at most a day. Searching for met constraints skips ahead to the next
        dusk when twilight is enforced, and a setting target must clear its
        altitude constraint by the setting cutoff unless the job is already
        running.

        Args:
            when: start of the search
            check_if_constraints_are_met: search for met (True) or violated
            increment: step in minutes
            until: end of the search window, inclusive
            running_job: the job is already running

        Returns:
            (time, reason): time is None when nothing was found; reason says
            why constraints are violated at the returned time
        """
        when = ensure_utc(when)
        if increment < 1:
            raise ValueError(f"search increment must be at least a minute, got {increment}")

        max_minutes = float(self.config.MAX_SEARCH_MINUTES)
        if until is not None:
            until = ensure_utc(until)
            if when >= until:
                return None, "empty search window"
            max_minutes = min(max_minutes, (until - when).total_seconds() / 60.0)

        cutoff = self.config.SETTING_ALTITUDE_CUTOFF
        minute = 0
        while minute <= max_minutes:
            t = when + timedelta(minutes=minute)

            if self._enforce_twilight:
                night, _, next_success = self.evaluator.runs_during_astronomical_night(t)
                if not night:
                    if not check_if_constraints_are_met:
                        return t, "twilight"
                    if next_success is not None:
                        skip = int((next_success - t).total_seconds() // 60) - increment
                        if skip > 0:
                            minute += skip
                    minute += increment
                    continue

            altitude, azimuth, is_setting = self.evaluator.horizontal(self._target, t)
            ok, reason = self.evaluator.satisfies_altitude_constraint(self, azimuth, altitude)
            if ok:
                ok, reason = self.evaluator.satisfies_moon_constraint(self, t)

            if check_if_constraints_are_met:
                if ok and not running_job and is_setting:
                    ok, _ = self.evaluator.satisfies_altitude_constraint(self, azimuth, altitude - cutoff)
                if ok:
                    return t, ""
            elif not ok:
                return t, reason

            minute += increment

        return None, "no change within search window"

    def get_next_possible_start_time(self, when: Optional[datetime] = None, increment: int = 1,
                                     running_job: bool = False,
                                     until: Optional[datetime] = None) -> Optional[datetime]:
        """
        Next time the job may start, None if it cannot start before `until`.

        A job authored to start at a fixed time does not start earlier and
        is missed when too late. A job with a fixed completion time does not
        start after it. Results are memoized per (when, until).

        A running job additionally needs its window to stay open for its
        estimated duration.
        """
        when = ensure_utc(when) if when is not None else self._now()

        if not self.is_search_candidate():
            logger.debug(f"Job {self.name} is {self.status_string}, no start time")
            return None

        if (not running_job and self._file_startup_condition == StartupCondition.AT
                and self._file_startup_time is not None):
            seconds_from_now = (self._file_startup_time - when).total_seconds()
            if seconds_from_now < -self.config.MISSED_START_TOLERANCE:
                return None
            if seconds_from_now > 0:
                when = self._file_startup_time

        if (self._completion_condition == CompletionCondition.AT
                and self._completion_time is not None and self._completion_time < when):
            return None

        cache = self.running_start_time_cache if running_job else self.start_time_cache
        hit, result, _ = cache.check(when, until)
        if hit:
            return result

        if running_job:
            result = self._search_running_start_time(when, increment, until)
        else:
            result, _ = self.calculate_next_time(when, True, increment, until)

        logger.debug(f"Job {self.name}: next start after {when.isoformat()} is {result}")
        cache.add(when, until, result)
        return result

    def _search_running_start_time(self, when: datetime, increment: int,
                                   until: Optional[datetime]) -> Optional[datetime]:
        if until is None:
            until = when + timedelta(minutes=self.config.MAX_SEARCH_MINUTES)

        start, _ = self.calculate_next_time(when, True, increment, until, running_job=True)
        if self._estimated_time <= 0:
            return start

        duration = timedelta(seconds=self._estimated_time)
        while start is not None:
            end, reason = self.calculate_next_time(start, False, increment, start + duration, running_job=True)
            if end is None or end >= start + duration:
                return start
            logger.debug(f"Job {self.name}: window at {start} closes at {end} ({reason}), "
                         f"shorter than {self._estimated_time}s")
            if end >= until:
                return None
            start, _ = self.calculate_next_time(end, True, increment, until, running_job=True)

        return None

    def get_next_end_time(self, start: datetime, increment: int = 1,
                          until: Optional[datetime] = None) -> Tuple[Optional[datetime], str]:
        """
        First time at or after `start` when the job's constraints are violated.

        The completion time caps the result of a FINISH_AT job. When the
        constraints hold through `until`, `until` is returned.

        Returns:
            (end, reason)
        """
        start = ensure_utc(start)

        if (self._file_startup_condition == StartupCondition.AT
                and self._file_startup_time is not None and start < self._file_startup_time):
            return None, "before start-at time"

        if self._completion_condition == CompletionCondition.AT and self._completion_time is not None:
            if self._completion_time < start:
                return None, "end-at time"
            limit = self._completion_time if until is None else min(ensure_utc(until), self._completion_time)
            end, reason = self.calculate_next_time(start, False, increment, limit)
            if end is None:
                return self._completion_time, "end-at time"
            return end, reason

        end, reason = self.calculate_next_time(start, False, increment, until)
        if end is None and until is not None and start < ensure_utc(until):
            return ensure_utc(until), "search limit"
        return end, reason

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _altitude_for_sort(self, when: Optional[datetime]) -> Tuple[float, bool]:
        if when is None:
            return self.altitude_at_startup, self.is_setting_at_startup
        return self.evaluator.altitude(self._target, when)

    @staticmethod
    def decreasing_altitude_order(a: "SchedulerJob", b: "SchedulerJob",
                                  when: Optional[datetime] = None) -> bool:
        """
        True if `a` sorts before `b`.

        A setting target comes before one that is not setting; otherwise the
        higher target comes first. Without `when`, the altitudes at startup
        are compared.
        """
        alt_a, setting_a = a._altitude_for_sort(when)
        alt_b, setting_b = b._altitude_for_sort(when)

        if setting_a != setting_b:
            return setting_a
        return alt_a > alt_b

    def altitude_sort_key(self, when: Optional[datetime] = None) -> Tuple[bool, float]:
        """Key for sorted() consistent with decreasing_altitude_order."""
        altitude, is_setting = self._altitude_for_sort(when)
        return (not is_setting, -altitude)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_record(self) -> Dict[str, Any]:
        """Field-for-field record of the job, JSON compatible."""
        def iso(t):
            return t.isoformat() if t is not None else None

        return {
            'name': self.name,
            'group': self.group,
            'sequence_file': self.sequence_file,
            'fits_file': self.fits_file,
            'target': {
                'ra': self._target.ra,
                'dec': self._target.dec,
                'jd': self._target.jd,
                'position_angle': self.position_angle,
            },
            'constraints': {
                'min_altitude': self._min_altitude if self.has_min_altitude() else None,
                'min_moon_separation': self._min_moon_separation if self.has_min_moon_separation() else None,
                'enforce_weather': self._enforce_weather,
                'enforce_twilight': self._enforce_twilight,
                'enforce_artificial_horizon': self._enforce_artificial_horizon,
            },
            'startup': {
                'file_condition': self._file_startup_condition.name,
                'file_time': iso(self._file_startup_time),
                'condition': self._startup_condition.name,
                'time': iso(self._startup_time),
            },
            'completion': {
                'condition': self._completion_condition.name,
                'time': iso(self._completion_time),
                'repeats': self._repeats_required,
            },
            'pipeline': [step.name for step in StepPipeline if step.value and step in self.step_pipeline],
            'in_sequence_focus': self.in_sequence_focus,
            'light_frames_required': self.light_frames_required,
            'initial_filter': self.initial_filter,
            'state': self._state.name,
            'stage': self._stage.name,
            'progress': {
                'repeats_remaining': self._repeats_remaining,
                'completed_iterations': self.completed_iterations,
                'sequence_count': self.sequence_count,
                'completed_count': self.completed_count,
                'captured_frames': dict(self.captured_frames_map),
            },
            'estimates': {
                'time': self._estimated_time,
                'time_per_repeat': self.estimated_time_per_repeat,
                'startup_time': self.estimated_startup_time,
                'time_left_this_repeat': self.estimated_time_left_this_repeat,
            },
            'dawn': iso(self.dawn),
            'dusk': iso(self.dusk),
        }

    def to_json(self, **kwargs) -> str:
        return json.dumps(self.to_record(), **kwargs)

    @classmethod
    def from_record(cls, record: Dict[str, Any], evaluator: ConstraintEvaluator) -> "SchedulerJob":
        """
        Build a job from a record produced by to_record(), or authored by hand.

        Only 'name' and 'target' are required.

        Raises:
            JobRecordError: if the record is malformed
        """
        def parse_time(value):
            if value is None:
                return None
            return ensure_utc(datetime.fromisoformat(value))

        try:
            job = cls(evaluator, record['name'], record.get('group', ""))
            job.sequence_file = record.get('sequence_file', "")
            job.fits_file = record.get('fits_file', "")

            target = record['target']
            job.set_target_coords(float(target['ra']), float(target['dec']), target.get('jd'))
            job.position_angle = float(target.get('position_angle', -1.0))

            constraints = record.get('constraints', {})
            if constraints.get('min_altitude') is not None:
                job.min_altitude = float(constraints['min_altitude'])
            if constraints.get('min_moon_separation') is not None:
                job.min_moon_separation = float(constraints['min_moon_separation'])
            job.enforce_weather = bool(constraints.get('enforce_weather', False))
            job.enforce_twilight = bool(constraints.get('enforce_twilight', False))
            job.enforce_artificial_horizon = bool(constraints.get('enforce_artificial_horizon', False))

            startup = record.get('startup', {})
            job.file_startup_condition = StartupCondition[startup.get('file_condition', 'ASAP')]
            job.file_startup_time = parse_time(startup.get('file_time'))
            job.startup_condition = StartupCondition[startup.get('condition', job.file_startup_condition.name)]
            startup_time = parse_time(startup.get('time', startup.get('file_time')))
            if startup_time is not None:
                job.startup_time = startup_time

            completion = record.get('completion', {})
            condition = CompletionCondition[completion.get('condition', 'SEQUENCE')]
            job.completion_condition = condition
            if condition == CompletionCondition.REPEAT:
                job.repeats_required = int(completion.get('repeats', 1))
            completion_time = parse_time(completion.get('time'))
            if condition == CompletionCondition.AT:
                if completion_time is None:
                    raise JobRecordError(f"job {job.name!r} finishes AT but has no completion time")
                job.completion_time = completion_time

            job.step_pipeline = StepPipeline.NONE
            for step in record.get('pipeline', []):
                job.step_pipeline |= StepPipeline[step]
            job.in_sequence_focus = bool(record.get('in_sequence_focus', False))
            job.light_frames_required = bool(record.get('light_frames_required', False))
            job.initial_filter = record.get('initial_filter', "")

            progress = record.get('progress', {})
            job.repeats_remaining = int(progress.get('repeats_remaining', job.repeats_required))
            job.completed_iterations = int(progress.get('completed_iterations', 0))
            job.sequence_count = int(progress.get('sequence_count', 0))
            job.completed_count = int(progress.get('completed_count', 0))
            job.captured_frames_map = {str(k): int(v) for k, v in progress.get('captured_frames', {}).items()}

            estimates = record.get('estimates', {})
            job.estimated_time = int(estimates.get('time', -1))
            job.estimated_time_per_repeat = int(estimates.get('time_per_repeat', 0))
            job.estimated_startup_time = int(estimates.get('startup_time', 0))
            job.estimated_time_left_this_repeat = int(estimates.get('time_left_this_repeat', 0))

            job._state = JobStatus[record.get('state', 'IDLE')]
            job._stage = JobStage[record.get('stage', 'IDLE')]
        except JobRecordError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise JobRecordError(f"invalid job record {record.get('name', '?')!r}: {e}") from e

        return job

    @classmethod
    def from_json(cls, text: str, evaluator: ConstraintEvaluator) -> "SchedulerJob":
        return cls.from_record(json.loads(text), evaluator)
