#!/usr/bin/env python3
"""
Tests for scheduler.py: evaluation pass, job files and night simulation
"""

import sys
import os
import json
from datetime import timedelta

import pytest

# Add src directory to path to import the scheduler modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from conftest import at
from scheduler import Scheduler, SimulatedClock, load_jobs, load_horizon
from scheduler_job import JobStatus, StartupCondition
from scheduler_state import SchedulerTimerState


@pytest.fixture
def scheduler(context):
    return Scheduler(context)


def test_pass_schedules_job_window(scheduler, make_job):
    job = make_job(min_altitude=30.0)
    scheduler.add_job(job)

    plan = scheduler.evaluate_jobs()
    assert plan == [job]
    assert job.state == JobStatus.SCHEDULED
    assert job.startup_time == at(21)
    assert job.greedy_completion_time == at(3, day=1)
    assert "minAltitude" in job.stop_reason
    assert scheduler.state.timer_state == SchedulerTimerState.RUN_SCHEDULER


def test_pass_clears_caches(scheduler, make_job):
    job = make_job(min_altitude=30.0)
    scheduler.add_job(job)
    job.get_next_possible_start_time(at(20, 30), until=at(20, 45))

    scheduler.evaluate_jobs()
    # Only the pass's own query remains
    assert len(job.start_time_cache) == 1


def test_pass_completes_and_invalidates(scheduler, make_job):
    done = make_job("done", min_altitude=30.0)
    done.repeats_required = 2
    done.repeats_remaining = 0
    missed = make_job("missed", min_altitude=30.0, file_startup_condition=StartupCondition.AT,
                      file_startup_time=at(10))
    for job in (done, missed):
        scheduler.add_job(job)

    assert scheduler.evaluate_jobs() == []
    assert done.state == JobStatus.COMPLETE
    assert missed.state == JobStatus.INVALID
    assert missed.stop_reason == "start-at time missed"


def test_aborted_job_waits_for_backoff(scheduler, make_job, context):
    job = make_job(min_altitude=30.0)
    scheduler.add_job(job)
    job.state = JobStatus.ABORTED

    scheduler.evaluate_jobs(at(12, 1))
    assert job.state == JobStatus.ABORTED

    context.clock_time = at(12, 10)
    scheduler.evaluate_jobs()
    assert job.state == JobStatus.SCHEDULED


def test_equal_start_times_ordered_by_altitude(scheduler, make_job, context):
    context.positions[1.0] = (40.0, False)
    context.positions[2.0] = (60.0, False)
    context.positions[3.0] = (35.0, True)
    low = make_job("low", ra=1.0)
    high = make_job("high", ra=2.0)
    setting = make_job("setting", ra=3.0)
    for job in (low, high, setting):
        scheduler.add_job(job)

    assert scheduler.evaluate_jobs() == [setting, high, low]


def test_preemptive_shutdown_until_first_job(scheduler, make_job, config):
    config.PREEMPTIVE_SHUTDOWN = True
    scheduler.add_job(make_job(min_altitude=30.0))

    scheduler.evaluate_jobs()
    assert scheduler.state.preemptive_shutdown()
    assert scheduler.state.preemptive_shutdown_wakeup_time() == at(21)
    assert scheduler.state.timer_state == SchedulerTimerState.WAKEUP
    assert scheduler.state.timer_interval == 9 * 3600 * 1000


def test_simulated_night(scheduler, make_job, context):
    clock = SimulatedClock(at(12))
    context._clock = clock
    job = make_job(min_altitude=30.0)
    job.estimated_time = 3600
    scheduler.add_job(job)

    runs = scheduler.simulate(clock, at(12, day=1))
    assert [(run['name'], run['start'], run['stop']) for run in runs] == [("M31", at(21), at(22))]
    assert job.state == JobStatus.COMPLETE


def test_simulated_repeats_are_interrupted_by_window(scheduler, make_job, context):
    clock = SimulatedClock(at(12))
    context._clock = clock
    job = make_job(min_altitude=30.0)
    job.repeats_required = 2
    job.estimated_time = 4 * 3600
    scheduler.add_job(job)

    runs = scheduler.simulate(clock, at(12, day=2))
    assert [(run['start'], run['stop']) for run in runs] == [
        (at(21), at(1, day=1)),
        (at(1, day=1), at(3, day=1)),
        (at(21, day=1), at(1, day=2)),
    ]
    assert runs[1]['reason']
    assert job.state == JobStatus.COMPLETE
    assert job.repeats_remaining == 0


def test_simulation_waits_out_abort_backoff(scheduler, make_job, context, config):
    clock = SimulatedClock(at(12))
    context._clock = clock
    job = make_job(min_altitude=30.0)
    scheduler.add_job(job)
    job.state = JobStatus.ABORTED

    runs = scheduler.simulate(clock, at(12, day=1))
    assert [(run['start'], run['stop']) for run in runs] == [(at(21), at(22))]
    assert job.state == JobStatus.COMPLETE


def test_simulated_repeats_set_through_attributes(scheduler, make_job, context):
    clock = SimulatedClock(at(20))
    context._clock = clock
    job = make_job(min_altitude=30.0)
    job.repeats_required = 3
    job.estimated_time = 1800
    scheduler.add_job(job)
    assert job.repeats_remaining == 3

    runs = scheduler.simulate(clock, at(3, day=1))
    assert [(run['start'], run['stop']) for run in runs] == [
        (at(21), at(21, 30)), (at(21, 30), at(22)), (at(22), at(22, 30))
    ]
    assert job.state == JobStatus.COMPLETE


def test_load_jobs_skips_malformed_records(tmp_path, evaluator):
    path = tmp_path / "jobs.json"
    path.write_text(json.dumps({'jobs': [
        {'name': 'M31', 'target': {'ra': 0.7123, 'dec': 41.269}, 'constraints': {'min_altitude': 30}},
        {'name': 'broken'},
        {'name': 'M42', 'target': {'ra': 5.5881, 'dec': -5.391}, 'completion': {'condition': 'LOOP'}},
    ]}))

    jobs = load_jobs(str(path), evaluator)
    assert [job.name for job in jobs] == ["M31", "M42"]
    assert jobs[0].min_altitude == 30


def test_load_horizon():
    horizon = load_horizon([
        {'name': 'trees', 'points': [[90, 20], [270, 50]]},
        {'points': [[300, 70], [360, 70]], 'ceiling': True, 'enabled': False},
    ])
    assert [region.name for region in horizon.regions] == ["trees", "region2"]
    assert horizon.is_below_horizon(180.0, 30.0)
    assert not horizon.is_below_horizon(330.0, 80.0)


def test_simulated_clock():
    clock = SimulatedClock(at(12))
    clock.advance(90)
    assert clock() == at(12) + timedelta(seconds=90)


def test_sample_job_file(tmp_path, evaluator):
    from scheduler_example import create_sample_job_file

    filename = create_sample_job_file(str(tmp_path / "sample_jobs.json"))
    jobs = load_jobs(filename, evaluator)
    assert [job.name for job in jobs] == ["Omega Cen", "NGC 6744", "Eta Carinae"]
    assert jobs[2].estimated_time == int(2.5 * 3600)

    with open(filename) as f:
        horizon = load_horizon(json.load(f)['horizon'])
    assert horizon.altitude_constraints_exist()
