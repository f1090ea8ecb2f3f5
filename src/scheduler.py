"""
Observation Job Scheduler

Evaluation pass over a list of observation jobs, and a command line that
simulates a night of scheduling for a job file.

Each pass clears the job start time caches, asks every candidate job for
its next possible start time and the end of that window, and orders the
resulting plan. Jobs starting at the same time are ordered by
decreasing altitude, setting targets first. Driving the observatory itself
(slews, captures, parking) is left to the caller; the simulation only
advances a clock.

Usage:
    python src/scheduler.py jobs.json --lat 32.78 --lon -105.82 --date 2025-03-01
"""

import os
import sys
import json
import logging
from datetime import datetime, timedelta, timezone
from functools import cmp_to_key
from itertools import groupby
from typing import Any, Dict, List, Optional

from scheduler_config import Config, configure_logging
from scheduler_astro import AstronomicalContext, AstropyContext, GeoLocation, ensure_utc
from scheduler_horizon import ArtificialHorizon, HorizonRegion
from scheduler_constraints import ConstraintEvaluator
from scheduler_job import (
    SchedulerJob, JobStatus, JobStage, StartupCondition, CompletionCondition,
    JobRecordError, COMPLETION_CONDITION_STRINGS
)
from scheduler_state import SchedulerModuleState, SchedulerState, SchedulerTimerState

logger = logging.getLogger(__name__)


# ============================================================================
# Simulation clock
# ============================================================================

class SimulatedClock:
    """Settable time source for the astronomical context"""

    def __init__(self, start: datetime):
        self.current = ensure_utc(start)

    def __call__(self) -> datetime:
        return self.current

    def set(self, when: datetime):
        self.current = ensure_utc(when)

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)


# ============================================================================
# Job files
# ============================================================================

def load_horizon(records: List[Dict[str, Any]]) -> ArtificialHorizon:
    """Build an artificial horizon from region records."""
    horizon = ArtificialHorizon()
    for record in records:
        horizon.add_region(HorizonRegion(
            name=record.get('name', f"region{len(horizon.regions) + 1}"),
            points=[tuple(p) for p in record['points']],
            enabled=record.get('enabled', True),
            ceiling=record.get('ceiling', False)
        ))
    return horizon


def load_jobs(filename: str, evaluator: ConstraintEvaluator) -> List[SchedulerJob]:
    """
    Load jobs from a JSON file.

    The file holds either a list of job records or an object with a 'jobs'
    list. Malformed records are logged and skipped.

    Args:
        filename: Path to the job file
        evaluator: Constraint evaluator the jobs are bound to

    Returns:
        List of jobs in file order
    """
    with open(filename) as f:
        data = json.load(f)

    records = data['jobs'] if isinstance(data, dict) else data

    jobs = []
    for index, record in enumerate(records):
        try:
            jobs.append(SchedulerJob.from_record(record, evaluator))
        except JobRecordError as e:
            logger.error(f"Skipping job {index + 1} in {filename}: {e}")

    logger.info(f"Loaded {len(jobs)} of {len(records)} jobs from {filename}")
    return jobs


# ============================================================================
# Scheduler
# ============================================================================

class Scheduler:
    """Greedy evaluation of observation jobs against the sky"""

    def __init__(self, context: AstronomicalContext, config: Optional[Config] = None,
                 state: Optional[SchedulerModuleState] = None):
        self.context = context
        self.config = config or context.config
        self.evaluator = ConstraintEvaluator(context, self.config)
        self.state = state or SchedulerModuleState(self.config, clock=context.now)

    @property
    def jobs(self) -> List[SchedulerJob]:
        return self.state.jobs

    def add_job(self, job: SchedulerJob):
        for other in self.jobs:
            if job.is_duplicate_of(other):
                logger.warning(f"Job {job.name} duplicates an existing job with the same sequence")
                break
        self.jobs.append(job)

    def load_jobs(self, filename: str) -> int:
        for job in load_jobs(filename, self.evaluator):
            self.add_job(job)
        return len(self.jobs)

    def clear_caches(self):
        """Forget cached start times of every job."""
        for job in self.jobs:
            job.clear_cache()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_jobs(self, now: Optional[datetime] = None) -> List[SchedulerJob]:
        """
        Evaluate every job once.

        Returns:
            Scheduled jobs ordered by startup time, then by decreasing altitude
        """
        now = ensure_utc(now) if now is not None else self.context.now()
        self.clear_caches()

        for job in self.jobs:
            self.evaluate_job(job, now)

        plan = self.order_jobs([job for job in self.jobs if job.state == JobStatus.SCHEDULED])
        self._plan_next_iteration(plan, now)
        return plan

    def evaluate_job(self, job: SchedulerJob, now: datetime):
        """Schedule one job, or mark it complete or invalid."""
        if job.state in (JobStatus.BUSY, JobStatus.COMPLETE, JobStatus.ERROR, JobStatus.INVALID):
            return

        if job.state == JobStatus.ABORTED:
            backoff = timedelta(seconds=self.config.ABORT_BACKOFF_SEC)
            if job.last_abort_time is not None and now < job.last_abort_time + backoff:
                return

        job.state = JobStatus.EVALUATION

        if self._is_complete(job, now):
            job.state = JobStatus.COMPLETE
            logger.info(f"Job {job.name} is complete")
            return

        start = job.get_next_possible_start_time(now, self.config.DEFAULT_SEARCH_INCREMENT)
        if start is None:
            if job.file_startup_condition == StartupCondition.AT and job.file_startup_time is not None \
                    and job.file_startup_time < now:
                job.stop_reason = "start-at time missed"
                job.state = JobStatus.INVALID
                logger.warning(f"Job {job.name} missed its start time {job.file_startup_time.isoformat()}")
            else:
                job.stop_reason = "no possible start time within a day"
                logger.info(f"Job {job.name} cannot start before {now + timedelta(minutes=self.config.MAX_SEARCH_MINUTES)}")
            return

        end, reason = job.get_next_end_time(start, self.config.DEFAULT_SEARCH_INCREMENT,
                                            start + timedelta(minutes=self.config.MAX_SEARCH_MINUTES))
        job.startup_time = start
        job.greedy_completion_time = end
        job.stop_reason = reason
        job.state = JobStatus.SCHEDULED
        logger.info(f"Job {job.name} scheduled {start.isoformat()} - "
                    f"{end.isoformat() if end is not None else 'open'} ({reason or 'no limit'})")

    def _is_complete(self, job: SchedulerJob, now: datetime) -> bool:
        condition = job.completion_condition
        if condition == CompletionCondition.AT:
            return job.completion_time is not None and job.completion_time <= now
        if condition == CompletionCondition.REPEAT:
            return job.repeats_remaining == 0
        if condition == CompletionCondition.SEQUENCE:
            return job.completed_iterations > 0
        return False

    @staticmethod
    def order_jobs(jobs: List[SchedulerJob]) -> List[SchedulerJob]:
        """Order by startup time, equal startup times by decreasing altitude."""
        def compare(when):
            def cmp(a, b):
                if SchedulerJob.decreasing_altitude_order(a, b, when):
                    return -1
                if SchedulerJob.decreasing_altitude_order(b, a, when):
                    return 1
                return 0
            return cmp_to_key(cmp)

        ordered = []
        jobs = sorted(jobs, key=lambda job: job.startup_time)
        for when, group in groupby(jobs, key=lambda job: job.startup_time):
            ordered.extend(sorted(group, key=compare(when)))
        return ordered

    def _plan_next_iteration(self, plan: List[SchedulerJob], now: datetime):
        """Set up the next pass, shutting down preemptively when the next job is far off."""
        state = self.state

        if state.preemptive_shutdown() and state.preemptive_shutdown_wakeup_time() <= now:
            logger.info("Waking up from preemptive shutdown")
            state.disable_preemptive_shutdown()

        if plan and self.config.PREEMPTIVE_SHUTDOWN:
            first_start = plan[0].startup_time
            if first_start - now > timedelta(hours=self.config.PREEMPTIVE_SHUTDOWN_HOURS):
                state.enable_preemptive_shutdown(first_start)

        if state.preemptive_shutdown():
            delay = (state.preemptive_shutdown_wakeup_time() - now).total_seconds() * 1000.0
            state.setup_next_iteration(SchedulerTimerState.WAKEUP, int(delay))
        else:
            state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(self, clock: SimulatedClock, end: datetime) -> List[Dict[str, Any]]:
        """
        Run jobs in simulated time until `end`.

        Each job runs for its estimated duration, or until its window
        closes, without any device in the loop.

        Returns:
            One log entry per job run
        """
        end = ensure_utc(end)
        runs = []
        self.state.scheduler_state = SchedulerState.RUNNING

        while clock() < end:
            plan = self.evaluate_jobs(clock())
            self.state.start_iteration_timer()

            ready = [job for job in plan if job.startup_time <= clock()]
            if not ready:
                if not plan:
                    resume = self._abort_backoff_end()
                    if resume is None or resume >= end or resume <= clock():
                        break
                    logger.info(f"Waiting until {resume.isoformat()} for aborted jobs")
                    clock.set(resume)
                    continue
                if plan[0].startup_time >= end:
                    break
                logger.info(f"Waiting until {plan[0].startup_time.isoformat()} for {plan[0].name}")
                clock.set(plan[0].startup_time)
                continue

            runs.append(self.run_job(ready[0], clock, end))

        self.state.scheduler_state = SchedulerState.IDLE
        return runs

    def _abort_backoff_end(self) -> Optional[datetime]:
        """Earliest time an aborted job becomes a candidate again."""
        backoff = timedelta(seconds=self.config.ABORT_BACKOFF_SEC)
        times = [job.last_abort_time + backoff for job in self.jobs
                 if job.state == JobStatus.ABORTED and job.last_abort_time is not None]
        return min(times, default=None)

    def run_job(self, job: SchedulerJob, clock: SimulatedClock, end: datetime) -> Dict[str, Any]:
        """Simulate one run of a scheduled job."""
        start = clock()
        self.state.active_job = job
        self.state.start_current_operation_timer()
        job.state = JobStatus.BUSY
        job.stage = JobStage.CAPTURING

        duration = job.estimated_time if job.estimated_time > 0 else self.config.DEFAULT_JOB_DURATION_SEC
        if job.completion_condition == CompletionCondition.LOOP:
            stop = end
        else:
            stop = start + timedelta(seconds=duration)
        interrupted = False
        if job.greedy_completion_time is not None and job.greedy_completion_time < stop:
            stop = job.greedy_completion_time
            interrupted = True
        stop = min(max(stop, start + timedelta(minutes=1)), end)

        clock.set(stop)
        job.stage = JobStage.COMPLETE
        job.stage = JobStage.IDLE

        entry = {
            'name': job.name,
            'start': start,
            'stop': stop,
            'reason': job.stop_reason if interrupted else "",
        }

        if interrupted and job.completion_condition != CompletionCondition.AT:
            logger.info(f"Job {job.name} interrupted at {stop.isoformat()}: {job.stop_reason}")
            job.state = JobStatus.ABORTED
        elif stop >= end and job.completion_condition == CompletionCondition.LOOP:
            job.state = JobStatus.IDLE
        else:
            job.completed_iterations += 1
            if job.completion_condition == CompletionCondition.REPEAT and job.repeats_remaining > 0:
                job.repeats_remaining = job.repeats_remaining - 1
            job.state = JobStatus.EVALUATION

        self.state.active_job = None
        return entry


# ============================================================================
# Output
# ============================================================================

def print_plan(plan: List[SchedulerJob], jobs: List[SchedulerJob]):
    """Print the scheduled jobs and why the others are not scheduled."""
    print(f"{'Job':<20} {'State':<11} {'Start (UTC)':<20} {'End (UTC)':<20} {'Alt':>5} {'Moon':>4}  Reason")
    for job in plan:
        end = job.greedy_completion_time.strftime('%Y-%m-%d %H:%M') if job.greedy_completion_time else "-"
        print(f"{job.name:<20} {job.status_string:<11} {job.startup_time.strftime('%Y-%m-%d %H:%M'):<20} "
              f"{end:<20} {job.altitude_at_startup:5.1f} {job.moon_separation_score(job.startup_time):4d}  "
              f"{job.stop_reason}")
    for job in jobs:
        if job not in plan:
            print(f"{job.name:<20} {job.status_string:<11} {'-':<20} {'-':<20} {'':>5} {'':>4}  "
                  f"{job.stop_reason or COMPLETION_CONDITION_STRINGS[job.completion_condition]}")


def print_runs(runs: List[Dict[str, Any]]):
    print(f"{'Job':<20} {'Start (UTC)':<20} {'Stop (UTC)':<20} Reason")
    for run in runs:
        print(f"{run['name']:<20} {run['start'].strftime('%Y-%m-%d %H:%M'):<20} "
              f"{run['stop'].strftime('%Y-%m-%d %H:%M'):<20} {run['reason']}")


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Observation Job Scheduler')
    parser.add_argument('jobs_file', help='JSON job file')
    parser.add_argument('--lat', type=float, required=True, help='Observatory latitude (degrees, north positive)')
    parser.add_argument('--lon', type=float, required=True, help='Observatory longitude (degrees, east positive)')
    parser.add_argument('--elevation', type=float, default=0.0, help='Observatory elevation (meters)')
    parser.add_argument('--date', required=True, help='Start date YYYY-MM-DD (UTC)')
    parser.add_argument('--time', default='12:00', help='Start time HH:MM (UTC)')
    parser.add_argument('--hours', type=float, default=24.0, help='Length of the simulation')
    parser.add_argument('--simulate', action='store_true', help='Run the jobs in simulated time')
    parser.add_argument('--twilight-offset', type=float, nargs=2, metavar=('DAWN', 'DUSK'),
                        help='Dawn and dusk offsets in hours')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Increase verbosity')

    args = parser.parse_args()
    configure_logging(args.verbose)

    config = Config()
    if args.twilight_offset:
        config.DAWN_OFFSET_HOURS, config.DUSK_OFFSET_HOURS = args.twilight_offset

    start = datetime.strptime(f"{args.date} {args.time}", '%Y-%m-%d %H:%M').replace(tzinfo=timezone.utc)
    clock = SimulatedClock(start)

    horizon = None
    with open(args.jobs_file) as f:
        data = json.load(f)
    if isinstance(data, dict) and data.get('horizon'):
        horizon = load_horizon(data['horizon'])

    geo = GeoLocation(os.path.basename(args.jobs_file), args.lat, args.lon, args.elevation)
    context = AstropyContext(geo, horizon, clock=clock, config=config)
    scheduler = Scheduler(context, config)

    try:
        if scheduler.load_jobs(args.jobs_file) == 0:
            logger.error("No jobs to schedule")
            sys.exit(1)

        if args.simulate:
            print_runs(scheduler.simulate(clock, start + timedelta(hours=args.hours)))
        else:
            print_plan(scheduler.evaluate_jobs(), scheduler.jobs)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
