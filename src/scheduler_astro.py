"""
Astronomical Context for the Scheduler using Astropy

This module supplies everything the job scheduling core needs to know about
the sky:
- Time conversions (JD, GMST, LST)
- Target coordinates and precession to the epoch of date
- Altitude/azimuth and rising/setting state of a target
- Moon position, illumination and separation from a target
- Next astronomical dawn and dusk after a given time

The AstronomicalContext is a read-only snapshot of geo-location, artificial
horizon, weather and a time source. It is passed to the constraint evaluator
at construction rather than looked up from process-wide state, so tests can
substitute a context with a scripted sky.
"""

import math
import logging
import warnings
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache

import numpy as np

# Suppress astropy warnings for cleaner output
warnings.filterwarnings('ignore', category=UserWarning, module='astropy')

from astropy import units as u
from astropy.time import Time
from astropy.coordinates import (
    SkyCoord, FK5,
    get_sun, get_body,
    solar_system_ephemeris
)

from scheduler_config import Config

logger = logging.getLogger(__name__)

# Builtin ephemeris, no downloads
solar_system_ephemeris.set('builtin')

# ============================================================================
# Constants
# ============================================================================

DEG_TO_RAD = math.pi / 180.0
RAD_TO_DEG = 180.0 / math.pi
HOURS_TO_RAD = math.pi / 12.0
RAD_TO_HOURS = 12.0 / math.pi
JD_EPOCH_2000 = 2451545.0  # JD for 2000-01-01 12:00 UT
JD_UNIX_EPOCH = 2440587.5  # JD for 1970-01-01 00:00 UT
SOLAR_PER_SIDEREAL = 0.9972695663


class WeatherState(IntEnum):
    """Weather status as reported by the observatory weather station"""
    OK = 0
    WARNING = 1
    ALERT = 2


# ============================================================================
# Time Conversion Functions
# ============================================================================

def ensure_utc(when: datetime) -> datetime:
    """
    Normalize an aware datetime to UTC.

    Raises:
        ValueError: if the datetime is naive
    """
    if when.tzinfo is None or when.utcoffset() is None:
        raise ValueError(f"naive datetime {when!r}, scheduler times must be timezone-aware")
    return when.astimezone(timezone.utc)


def datetime_to_jd(when: datetime) -> float:
    """Julian Date of an aware datetime."""
    return JD_UNIX_EPOCH + ensure_utc(when).timestamp() / 86400.0


def jd_to_datetime(jd: float) -> datetime:
    """
    Convert Julian Date to an aware UTC datetime using astropy.

    Args:
        jd: Julian Date

    Returns:
        Datetime object in UTC
    """
    t = Time(jd, format='jd', scale='utc')
    return t.to_datetime(timezone=timezone.utc)


def gmst(jd: float) -> float:
    """
    Greenwich Mean Sidereal Time in hours (0-24).

    Linear IAU expression in UT; ignoring UT1-UTC keeps this offline and
    costs under a second of sidereal time.
    """
    return (18.697374558 + 24.06570982441908 * (jd - JD_EPOCH_2000)) % 24.0


def lst(jd: float, longitude: float) -> float:
    """
    Local Sidereal Time in hours.

    Args:
        jd: Julian Date
        longitude: Observer longitude in degrees, east positive
    """
    return (gmst(jd) + longitude / 15.0) % 24.0


# ============================================================================
# Coordinates
# ============================================================================

def precess_coordinates(ra: float, dec: float, jd_from: float, jd_to: float) -> Tuple[float, float]:
    """
    Precess coordinates from one epoch to another using astropy.

    Args:
        ra: Right ascension in hours
        dec: Declination in degrees
        jd_from: Julian Date of initial epoch
        jd_to: Julian Date of target epoch

    Returns:
        Tuple of (ra, dec) at target epoch
    """
    t_from = Time(jd_from, format='jd')
    t_to = Time(jd_to, format='jd')

    coord_from = SkyCoord(ra=ra*u.hour, dec=dec*u.deg,
                          frame=FK5(equinox=t_from))
    coord_to = coord_from.transform_to(FK5(equinox=t_to))

    return coord_to.ra.hour, coord_to.dec.deg


@dataclass
class TargetCoords:
    """Target position: catalog J2000 and epoch-of-date coordinates"""
    ra: float = 0.0  # J2000 right ascension, hours
    dec: float = 0.0  # J2000 declination, degrees
    ra_jnow: Optional[float] = None
    dec_jnow: Optional[float] = None
    jd: float = JD_EPOCH_2000  # epoch of the jnow coordinates

    def __post_init__(self):
        if self.ra_jnow is None:
            self.ra_jnow = self.ra
        if self.dec_jnow is None:
            self.dec_jnow = self.dec

    @classmethod
    def from_j2000(cls, ra: float, dec: float, jd: Optional[float] = None) -> "TargetCoords":
        """Build coordinates, precessing to the epoch of date when one is given."""
        if not (0.0 <= ra < 24.0) or not (-90.0 <= dec <= 90.0):
            raise ValueError(f"coordinates out of range: ra={ra}h dec={dec}deg")
        if jd is None or abs(jd - JD_EPOCH_2000) < 1e-6:
            return cls(ra, dec)
        ra_now, dec_now = precess_coordinates(ra, dec, JD_EPOCH_2000, jd)
        return cls(ra, dec, ra_now, dec_now, jd)


def hour_angle_from_altitude(altitude: float, dec: float, lat: float) -> Optional[float]:
    """
    Calculate hour angle for given altitude.

    Args:
        altitude: Altitude in degrees
        dec: Declination in degrees
        lat: Observer latitude in degrees

    Returns:
        Hour angle in hours, or None if object never reaches altitude
    """
    alt_rad = altitude * DEG_TO_RAD
    dec_rad = dec * DEG_TO_RAD
    lat_rad = lat * DEG_TO_RAD

    cos_ha = ((math.sin(alt_rad) - math.sin(dec_rad) * math.sin(lat_rad)) /
              (math.cos(dec_rad) * math.cos(lat_rad)))

    if abs(cos_ha) > 1.0:
        return None

    return math.acos(cos_ha) * RAD_TO_HOURS


def hour_angle(ra: float, lst_hours: float) -> float:
    """Hour angle in hours, normalized to [-12, 12)."""
    return (lst_hours - ra + 12.0) % 24.0 - 12.0


def altitude_azimuth(ra: float, dec: float, lst_hours: float, latitude: float) -> Tuple[float, float]:
    """
    Calculate altitude and azimuth for given position.

    Args:
        ra: Right ascension in hours
        dec: Declination in degrees
        lst_hours: Local sidereal time in hours
        latitude: Observer latitude in degrees

    Returns:
        Tuple of (altitude, azimuth) in degrees, azimuth from north through east
    """
    ha_rad = hour_angle(ra, lst_hours) * HOURS_TO_RAD
    dec_rad = dec * DEG_TO_RAD
    lat_rad = latitude * DEG_TO_RAD

    sin_alt = (math.sin(dec_rad) * math.sin(lat_rad) +
               math.cos(dec_rad) * math.cos(lat_rad) * math.cos(ha_rad))
    sin_alt = float(np.clip(sin_alt, -1.0, 1.0))
    alt_rad = math.asin(sin_alt)

    # atan2 form stays defined at the zenith
    y = -math.sin(ha_rad) * math.cos(dec_rad)
    x = math.sin(dec_rad) * math.cos(lat_rad) - math.cos(dec_rad) * math.sin(lat_rad) * math.cos(ha_rad)
    az = math.atan2(y, x) * RAD_TO_DEG

    return alt_rad * RAD_TO_DEG, az % 360.0


# ============================================================================
# Sun and Moon Calculations using Astropy
# ============================================================================

def sun_position(jd: float) -> Tuple[float, float]:
    """
    Calculate sun position using astropy.

    Returns:
        Tuple of (ra, dec) in hours and degrees
    """
    sun = get_sun(Time(jd, format='jd'))
    return sun.ra.hour, sun.dec.deg


@lru_cache(maxsize=4096)
def _moon_position_cached(jd_minute: float) -> Tuple[float, float, float]:
    t = Time(jd_minute, format='jd')
    with solar_system_ephemeris.set('builtin'):
        moon = get_body('moon', t)
    sun = get_sun(t)

    elongation = moon.separation(sun).deg
    illumination = 0.5 * (1.0 - np.cos(np.radians(elongation)))

    return moon.ra.hour, moon.dec.deg, float(illumination)


def moon_position(jd: float) -> Tuple[float, float, float]:
    """
    Calculate moon position and phase using astropy.

    Results are memoized to the minute; the Moon moves about half an
    arcminute in that time.

    Returns:
        Tuple of (ra, dec, illumination) where illumination is 0-1
    """
    return _moon_position_cached(round(jd * 1440.0) / 1440.0)


def angular_separation(ra1: float, dec1: float, ra2: float, dec2: float) -> float:
    """
    Angular separation between two celestial positions using astropy.

    Args:
        ra1, dec1: First position (hours, degrees)
        ra2, dec2: Second position (hours, degrees)

    Returns:
        Angular separation in degrees
    """
    coord1 = SkyCoord(ra=ra1*u.hour, dec=dec1*u.deg, frame='icrs')
    coord2 = SkyCoord(ra=ra2*u.hour, dec=dec2*u.deg, frame='icrs')
    return coord1.separation(coord2).deg


# ============================================================================
# Context
# ============================================================================

@dataclass
class GeoLocation:
    """Observatory location"""
    name: str = "DEFAULT"
    latitude: float = 0.0  # degrees, north positive
    longitude: float = 0.0  # degrees, east positive
    elevation: float = 0.0  # meters


@dataclass
class MoonState:
    """Moon relative to a target at a given time"""
    separation: float  # degrees
    altitude: float  # degrees
    illumination: float  # 0-1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AstronomicalContext:
    """
    Read-only snapshot of location, horizon, weather and time source.

    Subclasses provide target altitude, Moon state and raw astronomical
    twilight events. This base class applies the configured dawn/dusk
    offsets and memoizes twilight events: the first events after a time
    are the same for every time up to the earlier of them.
    """

    def __init__(self, geo: GeoLocation, horizon=None,
                 clock: Optional[Callable[[], datetime]] = None,
                 weather: WeatherState = WeatherState.OK,
                 config: Optional[Config] = None):
        self.geo = geo
        self.horizon = horizon
        self.weather = weather
        self.config = config or Config()
        self._clock = clock or _utc_now
        self._twilight_memo = None
        self.twilight_computations = 0

    def now(self) -> datetime:
        """Current time from the injected clock."""
        return ensure_utc(self._clock())

    # -- to be provided by subclasses ----------------------------------------

    def altitude_at(self, coords: TargetCoords, when: datetime) -> Tuple[float, float, bool]:
        """Return (altitude, azimuth, is_setting) of the target at `when`."""
        raise NotImplementedError

    def moon_state_at(self, coords: TargetCoords, when: datetime) -> MoonState:
        """Return Moon separation, altitude and illumination at `when`."""
        raise NotImplementedError

    def compute_twilight_events(self, when: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Return the first raw astronomical (dawn, dusk) strictly after `when`."""
        raise NotImplementedError

    def sun_altitude_at(self, when: datetime) -> float:
        raise NotImplementedError

    # -- shared ------------------------------------------------------------

    def moon_separation_at(self, coords: TargetCoords, when: datetime) -> float:
        return self.moon_state_at(coords, when).separation

    def epoch_of_date(self, coords: TargetCoords, when: datetime) -> TargetCoords:
        """Coordinates precessed to the epoch of `when`."""
        return TargetCoords.from_j2000(coords.ra, coords.dec, datetime_to_jd(when))

    def twilight_events_after(self, when: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Raw astronomical dawn and dusk following `when`, memoized."""
        when = ensure_utc(when)
        if self._twilight_memo is not None:
            since, dawn, dusk = self._twilight_memo
            if since <= when:
                limit = min([e for e in (dawn, dusk) if e is not None],
                            default=since + timedelta(days=1))
                if when < limit:
                    return dawn, dusk

        self.twilight_computations += 1
        dawn, dusk = self.compute_twilight_events(when)
        self._twilight_memo = (when, dawn, dusk)
        return dawn, dusk

    def dawn_dusk_after(self, when: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        """
        First astronomical dawn and dusk strictly after `when`.

        Configured offsets are applied to the events; searching from
        `when - offset` keeps the adjusted events strictly after `when`.
        None means there is no such event within a day (polar regions).
        """
        when = ensure_utc(when)
        dawn_offset = timedelta(hours=self.config.DAWN_OFFSET_HOURS)
        dusk_offset = timedelta(hours=self.config.DUSK_OFFSET_HOURS)

        dawn, _ = self.twilight_events_after(when - dawn_offset)
        _, dusk = self.twilight_events_after(when - dusk_offset)

        return (dawn + dawn_offset if dawn is not None else None,
                dusk + dusk_offset if dusk is not None else None)

    def is_astronomical_night(self, when: datetime) -> bool:
        """True when the sun is below the astronomical twilight altitude."""
        dawn, dusk = self.twilight_events_after(when)
        if dawn is None and dusk is None:
            return self.sun_altitude_at(when) < self.config.ASTRONOMICAL_TWILIGHT_ALTITUDE
        return dawn is not None and (dusk is None or dawn < dusk)


class AstropyContext(AstronomicalContext):
    """Astronomical context computed with astropy for a fixed observatory"""

    def altitude_at(self, coords: TargetCoords, when: datetime) -> Tuple[float, float, bool]:
        jd = datetime_to_jd(when)
        lst_hours = lst(jd, self.geo.longitude)
        alt, az = altitude_azimuth(coords.ra_jnow, coords.dec_jnow, lst_hours, self.geo.latitude)
        # Past the meridian means setting
        is_setting = 0.0 <= hour_angle(coords.ra_jnow, lst_hours) < 12.0
        return alt, az, is_setting

    def moon_state_at(self, coords: TargetCoords, when: datetime) -> MoonState:
        jd = datetime_to_jd(when)
        moon_ra, moon_dec, illumination = moon_position(jd)
        moon_alt, _ = altitude_azimuth(moon_ra, moon_dec, lst(jd, self.geo.longitude), self.geo.latitude)
        separation = angular_separation(coords.ra_jnow, coords.dec_jnow, moon_ra, moon_dec)
        return MoonState(separation, moon_alt, illumination)

    def sun_altitude_at(self, when: datetime) -> float:
        jd = datetime_to_jd(when)
        sun_ra, sun_dec = sun_position(jd)
        alt, _ = altitude_azimuth(sun_ra, sun_dec, lst(jd, self.geo.longitude), self.geo.latitude)
        return alt

    def compute_twilight_events(self, when: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        jd = datetime_to_jd(when)
        dawn_jd = self._next_sun_crossing(jd, rising=True)
        dusk_jd = self._next_sun_crossing(jd, rising=False)
        dawn = jd_to_datetime(dawn_jd) if dawn_jd is not None else None
        dusk = jd_to_datetime(dusk_jd) if dusk_jd is not None else None
        logger.debug(f"Twilight after {when.isoformat()}: dawn {dawn}, dusk {dusk}")
        return dawn, dusk

    def _next_sun_crossing(self, jd: float, rising: bool, iterations: int = 3) -> Optional[float]:
        """
        Next time the sun crosses the astronomical twilight altitude.

        The sun's position is re-evaluated at each estimate since it moves
        about a degree per day.
        """
        threshold = self.config.ASTRONOMICAL_TWILIGHT_ALTITUDE
        jd_event = jd
        for _ in range(iterations):
            sun_ra, sun_dec = sun_position(jd_event)
            ha = hour_angle_from_altitude(threshold, sun_dec, self.geo.latitude)
            if ha is None:
                return None

            lst_event = (sun_ra - ha) if rising else (sun_ra + ha)
            dt_sidereal = (lst_event - lst(jd, self.geo.longitude)) % 24.0
            if dt_sidereal < 1e-6:
                dt_sidereal += 24.0
            jd_event = jd + dt_sidereal * SOLAR_PER_SIDEREAL / 24.0

        return jd_event
