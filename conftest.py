"""
Shared test fixtures: a scripted sky for the scheduling core
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add src directory to path to import the scheduler modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from scheduler_config import Config
from scheduler_astro import AstronomicalContext, GeoLocation, MoonState, WeatherState
from scheduler_constraints import ConstraintEvaluator
from scheduler_job import SchedulerJob


BASE = datetime(2025, 3, 1, tzinfo=timezone.utc)


def at(hour, minute=0, day=0):
    """UTC time on the test night"""
    return BASE + timedelta(days=day, hours=hour, minutes=minute)


class ScriptedContext(AstronomicalContext):
    """
    Scripted sky.

    Targets are 45 degrees up from 21:00 to 03:00 and 10 degrees up
    otherwise, setting after midnight. Astronomical dusk is at 19:00 and
    dawn at 05:00 every day. Targets listed in `positions` by right
    ascension get a fixed (altitude, is_setting) instead.
    """

    def __init__(self, now=None, config=None, horizon=None, weather=WeatherState.OK):
        self.clock_time = now or at(12)
        super().__init__(GeoLocation("TEST", 30.0, 0.0), horizon, lambda: self.clock_time, weather, config)
        self.rise_hour = 21
        self.set_hour = 3
        self.dusk_hour = 19
        self.dawn_hour = 5
        self.positions = {}
        self.azimuth = 180.0
        self.moon_separation = 90.0
        self.moon_altitude = -10.0
        self.moon_illumination = 0.0

    def _hours(self, when):
        return when.hour + when.minute / 60.0 + when.second / 3600.0

    def altitude_at(self, coords, when):
        if coords.ra in self.positions:
            altitude, is_setting = self.positions[coords.ra]
            return altitude, self.azimuth, is_setting
        hours = self._hours(when)
        up = hours >= self.rise_hour or hours < self.set_hour
        return (45.0 if up else 10.0), self.azimuth, when.hour < 12

    def moon_state_at(self, coords, when):
        return MoonState(self.moon_separation, self.moon_altitude, self.moon_illumination)

    def _next_daily(self, when, hour):
        event = when.replace(hour=hour, minute=0, second=0, microsecond=0)
        if event <= when:
            event += timedelta(days=1)
        return event

    def compute_twilight_events(self, when):
        return self._next_daily(when, self.dawn_hour), self._next_daily(when, self.dusk_hour)

    def sun_altitude_at(self, when):
        hours = self._hours(when)
        return -30.0 if (hours >= self.dusk_hour or hours < self.dawn_hour) else 10.0


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def context(config):
    return ScriptedContext(config=config)


@pytest.fixture
def evaluator(context):
    return ConstraintEvaluator(context)


@pytest.fixture
def make_job(evaluator):
    def make(name="M31", ra=0.7, dec=41.3, min_altitude=None, **attrs):
        job = SchedulerJob(evaluator, name)
        job.set_target_coords(ra, dec)
        if min_altitude is not None:
            job.min_altitude = min_altitude
        for key, value in attrs.items():
            setattr(job, key, value)
        return job
    return make
