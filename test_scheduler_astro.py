#!/usr/bin/env python3
"""
Tests for scheduler_astro.py functions
Checks time conversions, coordinates and the astropy context for La Silla Observatory
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add src directory to path to import the scheduler modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from scheduler_astro import (
    JD_EPOCH_2000,
    AstropyContext, GeoLocation, TargetCoords,
    ensure_utc, datetime_to_jd, jd_to_datetime,
    gmst, lst, hour_angle, altitude_azimuth,
    moon_position, angular_separation
)
from scheduler_constraints import ConstraintEvaluator
from scheduler_job import SchedulerJob


# La Silla Observatory coordinates
LA_SILLA = GeoLocation("La Silla", -29.2567, -70.7377, 2400.0)

# Austral winter night, local midnight is about 04:43 UT
QUERY_TIME = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def la_silla():
    return AstropyContext(LA_SILLA, clock=lambda: QUERY_TIME)


# ============================================================================
# Time conversions
# ============================================================================

def test_julian_date_round_trip():
    when = datetime(2025, 6, 15, 23, 17, 42, tzinfo=timezone.utc)
    assert datetime_to_jd(datetime(2000, 1, 1, 12, tzinfo=timezone.utc)) == pytest.approx(JD_EPOCH_2000)
    assert abs(jd_to_datetime(datetime_to_jd(when)) - when) < timedelta(milliseconds=1)


def test_naive_datetimes_are_rejected():
    with pytest.raises(ValueError):
        ensure_utc(datetime(2025, 6, 15, 12, 0))

    chile = timezone(timedelta(hours=-4))
    assert ensure_utc(datetime(2025, 6, 15, 8, 0, tzinfo=chile)) == QUERY_TIME


def test_sidereal_time():
    assert gmst(JD_EPOCH_2000) == pytest.approx(18.697374558)
    assert 0.0 <= lst(JD_EPOCH_2000, LA_SILLA.longitude) < 24.0
    assert lst(JD_EPOCH_2000, 15.0) == pytest.approx((18.697374558 + 1.0) % 24.0)


# ============================================================================
# Coordinates
# ============================================================================

def test_hour_angle_normalization():
    assert hour_angle(23.0, 1.0) == pytest.approx(2.0)
    assert hour_angle(1.0, 23.0) == pytest.approx(-2.0)


def test_altitude_azimuth_on_meridian():
    alt, az = altitude_azimuth(6.0, 0.0, 6.0, 30.0)
    assert alt == pytest.approx(60.0)
    assert az == pytest.approx(180.0)

    alt, _ = altitude_azimuth(6.0, 30.0, 6.0, 30.0)
    assert alt == pytest.approx(90.0)


def test_precession_to_epoch_of_date(la_silla):
    coords = TargetCoords.from_j2000(5.5881, -5.391, datetime_to_jd(QUERY_TIME))
    assert coords.ra == 5.5881
    assert 0.001 < abs(coords.ra_jnow - coords.ra) < 0.05
    assert abs(coords.dec_jnow - coords.dec) < 0.2

    assert la_silla.epoch_of_date(coords, QUERY_TIME).ra_jnow == pytest.approx(coords.ra_jnow)

    with pytest.raises(ValueError):
        TargetCoords.from_j2000(24.5, 0.0)


def test_angular_separation():
    assert angular_separation(0.0, 0.0, 12.0, 0.0) == pytest.approx(180.0)
    assert angular_separation(0.0, 90.0, 5.0, 90.0) == pytest.approx(0.0, abs=1e-6)


def test_moon_position_is_memoized_per_minute():
    jd = 2460800.5
    assert moon_position(jd) == moon_position(jd + 1e-6)
    _, dec, illumination = moon_position(jd)
    assert -30.0 < dec < 30.0
    assert 0.0 <= illumination <= 1.0


# ============================================================================
# Astropy context
# ============================================================================

def test_target_at_zenith_and_setting(la_silla):
    local_sidereal = lst(datetime_to_jd(QUERY_TIME), LA_SILLA.longitude)

    zenith = TargetCoords(local_sidereal, LA_SILLA.latitude)
    alt, _, _ = la_silla.altitude_at(zenith, QUERY_TIME)
    assert alt > 89.9

    west = TargetCoords((local_sidereal - 1.0) % 24.0, LA_SILLA.latitude)
    east = TargetCoords((local_sidereal + 1.0) % 24.0, LA_SILLA.latitude)
    assert la_silla.altitude_at(west, QUERY_TIME)[2]
    assert not la_silla.altitude_at(east, QUERY_TIME)[2]


def test_twilight_events(la_silla):
    dawn, dusk = la_silla.dawn_dusk_after(QUERY_TIME)
    assert dawn is not None and dusk is not None
    assert QUERY_TIME < dusk < dawn < QUERY_TIME + timedelta(days=1)

    assert la_silla.sun_altitude_at(dusk) == pytest.approx(-18.0, abs=0.5)
    assert la_silla.sun_altitude_at(dawn) == pytest.approx(-18.0, abs=0.5)

    # Memoized until the first event
    computations = la_silla.twilight_computations
    la_silla.dawn_dusk_after(QUERY_TIME + timedelta(hours=1))
    assert la_silla.twilight_computations == computations


def test_astronomical_night(la_silla):
    assert la_silla.is_astronomical_night(datetime(2025, 6, 16, 4, 0, tzinfo=timezone.utc))
    assert not la_silla.is_astronomical_night(datetime(2025, 6, 15, 16, 0, tzinfo=timezone.utc))


def test_moon_state(la_silla):
    moon = la_silla.moon_state_at(TargetCoords(13.4463, -47.4794), QUERY_TIME)
    assert 0.0 <= moon.separation <= 180.0
    assert -90.0 <= moon.altitude <= 90.0
    assert 0.0 <= moon.illumination <= 1.0


def test_moon_separation_uses_epoch_of_date(la_silla):
    coords = TargetCoords.from_j2000(13.4463, -47.4794, datetime_to_jd(QUERY_TIME))
    moon_ra, moon_dec, _ = moon_position(datetime_to_jd(QUERY_TIME))

    moon = la_silla.moon_state_at(coords, QUERY_TIME)
    assert moon.separation == pytest.approx(
        angular_separation(coords.ra_jnow, coords.dec_jnow, moon_ra, moon_dec))


def test_omega_centauri_starts_after_dusk(la_silla):
    evaluator = ConstraintEvaluator(la_silla)
    job = SchedulerJob(evaluator, "Omega Cen")
    job.set_target_coords(13.4463, -47.4794)
    job.min_altitude = 30.0
    job.enforce_twilight = True

    _, dusk = la_silla.dawn_dusk_after(QUERY_TIME)
    start = job.get_next_possible_start_time(QUERY_TIME)
    assert start is not None
    assert dusk <= start < dusk + timedelta(hours=3)

    ok, reason = evaluator.satisfies_constraints(job, start)
    assert ok, reason
