"""
Example Usage of the Observation Job Scheduler

This file demonstrates how to use the scheduler modules to:
1. Describe an observatory and its artificial horizon
2. Load observation jobs from a job file
3. Calculate astronomical night and target visibility
4. Evaluate and order the jobs
5. Simulate a night and track subsystem failures
"""

import sys
import json
import logging
import tempfile
import os
from datetime import datetime, timedelta, timezone

# Add src to path if running from project root
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), 'src'))

from scheduler import Scheduler, SimulatedClock, load_horizon, print_plan, print_runs
from scheduler_astro import AstropyContext, GeoLocation
from scheduler_config import Config, LOG_FORMAT
from scheduler_job import JobStatus
from scheduler_state import SchedulerTimerState

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT
)
logger = logging.getLogger(__name__)


LA_SILLA = GeoLocation("La Silla", -29.2567, -70.7377, 2400.0)
START = datetime(2025, 6, 15, 18, 0, tzinfo=timezone.utc)

SAMPLE_JOBS = {
    'horizon': [
        {'name': 'dome east', 'points': [[40, 25], [80, 35], [120, 25]]},
    ],
    'jobs': [
        {
            'name': 'Omega Cen',
            'sequence_file': 'omegacen_lrgb.esq',
            'target': {'ra': 13.4463, 'dec': -47.4794},
            'constraints': {'min_altitude': 30, 'enforce_twilight': True,
                            'enforce_artificial_horizon': True},
            'completion': {'condition': 'REPEAT', 'repeats': 2},
            'pipeline': ['TRACK', 'FOCUS', 'GUIDE'],
            'estimates': {'time': 5400},
        },
        {
            'name': 'NGC 6744',
            'sequence_file': 'ngc6744_lum.esq',
            'target': {'ra': 19.1645, 'dec': -63.8575},
            'constraints': {'min_altitude': 35, 'min_moon_separation': 40, 'enforce_twilight': True},
            'pipeline': ['TRACK', 'ALIGN', 'GUIDE'],
            'estimates': {'time': 7200},
        },
        {
            'name': 'Eta Carinae',
            'sequence_file': 'etacar_ha.esq',
            'target': {'ra': 10.7503, 'dec': -59.6844},
            'constraints': {'min_altitude': 25, 'enforce_twilight': True},
            'startup': {'file_condition': 'AT', 'file_time': '2025-06-16T02:00:00+00:00'},
            'completion': {'condition': 'AT', 'time': '2025-06-16T04:30:00+00:00'},
            'pipeline': ['TRACK', 'GUIDE'],
        },
    ],
}


def create_sample_job_file(filename: str = "sample_jobs.json") -> str:
    """Create a sample job file for testing"""
    with open(filename, 'w') as f:
        json.dump(SAMPLE_JOBS, f, indent=2)

    logger.info(f"Created sample job file: {filename}")
    return filename


def demonstrate_scheduler_initialization(job_file: str):
    """Set up the observatory and load the jobs"""
    print("\n" + "=" * 80)
    print("SCHEDULER INITIALIZATION")
    print("=" * 80)

    with open(job_file) as f:
        horizon = load_horizon(json.load(f)['horizon'])

    clock = SimulatedClock(START)
    config = Config()
    config.PREEMPTIVE_SHUTDOWN = True
    context = AstropyContext(LA_SILLA, horizon, clock=clock, config=config)
    scheduler = Scheduler(context, config)

    print(f"Observatory: {LA_SILLA.name} ({LA_SILLA.latitude:.4f}, {LA_SILLA.longitude:.4f})")
    print(f"Horizon regions: {', '.join(region.name for region in horizon.regions)}")
    print(f"Loaded {scheduler.load_jobs(job_file)} jobs")

    return scheduler, clock


def demonstrate_night_planning(scheduler: Scheduler):
    """Show the astronomical night and target altitudes"""
    print("\n" + "=" * 80)
    print("NIGHT PLANNING")
    print("=" * 80)

    context = scheduler.context
    dawn, dusk = context.dawn_dusk_after(START)
    print(f"Astronomical dusk: {dusk.strftime('%Y-%m-%d %H:%M')} UT")
    print(f"Astronomical dawn: {dawn.strftime('%Y-%m-%d %H:%M')} UT")

    print(f"\n{'Job':<14}" + "".join(f"{(dusk + timedelta(hours=h)).strftime('%H:%M'):>8}" for h in range(0, 11, 2)))
    for job in scheduler.jobs:
        altitudes = [scheduler.evaluator.altitude(job.target, dusk + timedelta(hours=h))[0] for h in range(0, 11, 2)]
        print(f"{job.name:<14}" + "".join(f"{alt:8.1f}" for alt in altitudes))


def demonstrate_job_evaluation(scheduler: Scheduler):
    """Evaluate the jobs once and print the plan"""
    print("\n" + "=" * 80)
    print("JOB EVALUATION")
    print("=" * 80)

    plan = scheduler.evaluate_jobs()
    print_plan(plan, scheduler.jobs)

    state = scheduler.state
    if state.preemptive_shutdown():
        print(f"\nPreemptive shutdown until {state.preemptive_shutdown_wakeup_time().strftime('%H:%M')} UT")
    if state.timer_state == SchedulerTimerState.WAKEUP:
        print(f"Next iteration in {state.timer_interval / 60000.0:.0f} minutes")


def demonstrate_night_simulation(scheduler: Scheduler, clock: SimulatedClock):
    """Run the jobs through the night in simulated time"""
    print("\n" + "=" * 80)
    print("NIGHT SIMULATION")
    print("=" * 80)

    runs = scheduler.simulate(clock, START + timedelta(hours=18))
    print_runs(runs)

    print()
    for job in scheduler.jobs:
        print(f"{job.name:<14} {job.status_string:<10} iterations: {job.completed_iterations}")


def demonstrate_failure_handling(scheduler: Scheduler):
    """Show the bounded retry counters"""
    print("\n" + "=" * 80)
    print("FAILURE HANDLING")
    print("=" * 80)

    state = scheduler.state
    attempt = 1
    while state.increase_focus_failure_count():
        print(f"Focus attempt {attempt} failed, retrying")
        attempt += 1
    print(f"Focus failed {attempt} times, aborting the job")

    job = scheduler.jobs[0]
    job.state = JobStatus.ABORTED
    print(f"{job.name}: {job.status_string}, startup restored to {job.startup_condition.name}")

    state.reset_failure_counters()
    print(f"Counters reset, focus retry allowed: {state.increase_focus_failure_count()}")


def main():
    print("\n" + "=" * 80)
    print(" " * 20 + "OBSERVATION JOB SCHEDULER DEMONSTRATION")
    print("=" * 80)

    with tempfile.TemporaryDirectory() as tmpdir:
        job_file = create_sample_job_file(os.path.join(tmpdir, "sample_jobs.json"))

        scheduler, clock = demonstrate_scheduler_initialization(job_file)
        demonstrate_night_planning(scheduler)
        demonstrate_job_evaluation(scheduler)
        demonstrate_night_simulation(scheduler, clock)
        demonstrate_failure_handling(scheduler)

    print("\n" + "=" * 80)
    print(" " * 25 + "DEMONSTRATION COMPLETE")
    print("=" * 80)


if __name__ == "__main__":
    main()
