#!/usr/bin/env python3
"""
Tests for scheduler_state.py: state machines, failure counters, profiles
and iteration timing
"""

import sys
import os

import pytest

# Add src directory to path to import the scheduler modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from conftest import at
from scheduler_state import (
    SchedulerModuleState, SchedulerState, StartupState, ShutdownState, ParkWaitState,
    EkosState, IndiState, SchedulerTimerState, CountdownTimer
)


class FakeMonotonic:
    """Monotonic clock advanced by hand"""

    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t

    def advance(self, milliseconds):
        self.t += milliseconds / 1000.0


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def state(monotonic):
    return SchedulerModuleState(clock=lambda: at(12), monotonic=monotonic)


COUNTERS = ["ekos_connect", "indi_connect", "focus", "guide", "align", "capture",
            "parking_cap", "parking_mount", "parking_dome"]


# ============================================================================
# Failure counters
# ============================================================================

def test_focus_failure_count_is_capped_at_five(state):
    for _ in range(5):
        assert state.increase_focus_failure_count()
    assert not state.increase_focus_failure_count()

    state.reset_failure_counters()
    assert state.increase_focus_failure_count()


@pytest.mark.parametrize("counter", COUNTERS)
def test_every_counter_is_capped(state, counter):
    increase = getattr(state, f"increase_{counter}_failure_count")
    reset = getattr(state, f"reset_{counter}_failure_count")

    results = [increase() for _ in range(state.max_failure_attempts() + 1)]
    assert results == [True] * 5 + [False]

    reset()
    assert increase()


def test_reset_failure_counters_keeps_parking_counters(state):
    for _ in range(5):
        state.increase_capture_failure_count()
        state.increase_parking_mount_failure_count()

    state.reset_failure_counters()
    assert state.capture_failure_count == 0
    assert not state.increase_parking_mount_failure_count()


# ============================================================================
# States
# ============================================================================

@pytest.mark.parametrize("name, first, second", [
    ("scheduler_state", SchedulerState.RUNNING, SchedulerState.PAUSED),
    ("startup_state", StartupState.UNPARK_DOME, StartupState.COMPLETE),
    ("shutdown_state", ShutdownState.PARK_CAP, ShutdownState.COMPLETE),
    ("park_wait_state", ParkWaitState.MOUNT_PARKING, ParkWaitState.PARKED),
    ("ekos_state", EkosState.STARTING, EkosState.READY),
    ("indi_state", IndiState.CONNECTING, IndiState.READY),
    ("timer_state", SchedulerTimerState.EVALUATE_JOBS, SchedulerTimerState.RUN_SCHEDULER),
])
def test_notification_only_on_transition(state, name, first, second):
    changes = []
    getattr(state, f"{name}_changed").connect(changes.append)

    setattr(state, name, first)
    setattr(state, name, first)
    setattr(state, name, second)

    assert changes == [first, second]
    assert getattr(state, name) == second


def test_preemptive_shutdown(state):
    assert not state.preemptive_shutdown()
    assert state.preemptive_shutdown_wakeup_time() is None

    state.enable_preemptive_shutdown(at(21))
    assert state.preemptive_shutdown()
    assert state.preemptive_shutdown_wakeup_time() == at(21)
    assert not state.preemptive_shutdown_due()

    state.disable_preemptive_shutdown()
    assert not state.preemptive_shutdown()
    assert state.preemptive_shutdown_wakeup_time() is None


def test_preemptive_shutdown_due(state):
    state.enable_preemptive_shutdown(at(11))
    assert state.preemptive_shutdown_due()


# ============================================================================
# Profiles
# ============================================================================

def test_default_profile_stays_first(state):
    assert state.profiles == ["Default"]

    state.update_profiles(["Simulators", "Default", "Observatory"])
    assert state.profiles == ["Default", "Simulators", "Observatory"]
    assert state.current_profile == "Default"


def test_current_profile_falls_back_to_first(state):
    state.update_profiles(["Simulators", "Observatory"])
    state.set_current_profile("Observatory")
    assert state.current_profile == "Observatory"

    state.set_current_profile("Unknown")
    assert state.current_profile == "Default"

    state.set_current_profile("Observatory")
    state.update_profiles(["Simulators"])
    assert state.current_profile == "Default"


# ============================================================================
# Timers
# ============================================================================

def test_countdown_timer(monotonic):
    timer = CountdownTimer(monotonic)
    assert not timer.is_active()
    assert timer.remaining_ms() == 0

    timer.start(1000)
    monotonic.advance(250)
    assert timer.is_active()
    assert timer.remaining_ms() == 750
    assert timer.elapsed_ms() == 250

    monotonic.advance(750)
    assert not timer.is_active()
    assert timer.expired()

    timer.stop()
    assert not timer.expired()


def test_setup_next_iteration_when_idle(state):
    state.setup_next_iteration(SchedulerTimerState.EVALUATE_JOBS, 500)
    assert state.timer_state == SchedulerTimerState.EVALUATE_JOBS
    assert state.timer_interval == 500
    assert state.iteration_setup

    state.start_iteration_timer()
    assert not state.iteration_setup
    assert state.iteration_timer.is_active()
    assert state.iteration_timer.remaining_ms() == 500


def test_setup_next_iteration_default_period(state):
    state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER)
    assert state.timer_interval == 1000


def test_setup_next_iteration_keeps_wall_clock_target(state, monotonic):
    state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER, 1000)
    state.start_iteration_timer()
    monotonic.advance(400)

    state.setup_next_iteration(SchedulerTimerState.EVALUATE_JOBS, 1000)
    assert state.timer_state == SchedulerTimerState.EVALUATE_JOBS
    assert state.iteration_timer.remaining_ms() == 600
    assert state.timer_interval == 600

    monotonic.advance(600)
    assert state.iteration_due()


def test_start_keeps_retargeted_timer_running(state, monotonic):
    state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER, 1000)
    state.start_iteration_timer()
    monotonic.advance(400)

    state.setup_next_iteration(SchedulerTimerState.EVALUATE_JOBS, 1000)
    monotonic.advance(100)
    state.start_iteration_timer()
    assert not state.iteration_setup
    assert state.iteration_timer.remaining_ms() == 500

    monotonic.advance(500)
    assert state.iteration_due()


def test_setup_next_iteration_never_negative(state, monotonic):
    state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER, 1000)
    state.start_iteration_timer()
    monotonic.advance(800)

    state.setup_next_iteration(SchedulerTimerState.RUN_SCHEDULER, 500)
    assert state.timer_interval == 0
    assert state.iteration_due()


def test_current_operation_timer(state, monotonic):
    assert state.current_operation_msec() == 0
    state.start_current_operation_timer()
    monotonic.advance(1500)
    assert state.current_operation_msec() == 1500


def test_guiding_timer(state, monotonic):
    state.start_guiding_timer(2000)
    assert state.is_guiding_timer_active()

    state.cancel_guiding_timer()
    assert not state.is_guiding_timer_active()

    state.start_guiding_timer(2000)
    monotonic.advance(2000)
    assert not state.is_guiding_timer_active()
