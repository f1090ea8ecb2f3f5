"""
Constraint Evaluation for Scheduler Jobs

Pure checks of a job's observing constraints at a given time:
- target altitude against the job's min altitude, the mount altitude
  limits and the artificial horizon
- Moon separation and the Moon separation score
- astronomical night (twilight enforcement)
- weather (current weather snapshot)

Every failed check returns a human-readable reason.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

import numpy as np

from scheduler_config import Config
from scheduler_astro import AstronomicalContext, TargetCoords, WeatherState

logger = logging.getLogger(__name__)


class ConstraintEvaluator:
    """Evaluates job constraints against an astronomical context"""

    def __init__(self, context: AstronomicalContext, config: Optional[Config] = None):
        self.context = context
        self.config = config or context.config
        # Number of target position computations, for diagnostics
        self.position_computations = 0

    # ------------------------------------------------------------------
    # Target position
    # ------------------------------------------------------------------

    def horizontal(self, target: TargetCoords, when: datetime) -> Tuple[float, float, bool]:
        """Altitude, azimuth and setting flag of the target."""
        self.position_computations += 1
        return self.context.altitude_at(target, when)

    def altitude(self, target: TargetCoords, when: datetime) -> Tuple[float, bool]:
        """Altitude of the target and whether it is setting."""
        alt, _, is_setting = self.horizontal(target, when)
        return alt, is_setting

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def satisfies_altitude_constraint(self, job, azimuth: float, altitude: float) -> Tuple[bool, str]:
        """
        Check whether the altitude is allowed for the job at this azimuth.

        The mount limits apply when enabled in the configuration, the job's
        min altitude when it is defined, and the artificial horizon when the
        job enforces it.
        """
        config = self.config
        if config.ENABLE_ALTITUDE_LIMITS:
            if altitude < config.MIN_MOUNT_ALTITUDE:
                return False, f"altitude {altitude:.1f} < mount altitude limit {config.MIN_MOUNT_ALTITUDE:.1f}"
            if altitude > config.MAX_MOUNT_ALTITUDE:
                return False, f"altitude {altitude:.1f} > mount altitude limit {config.MAX_MOUNT_ALTITUDE:.1f}"

        if job.has_min_altitude() and altitude < job.min_altitude:
            return False, f"altitude {altitude:.1f} < minAltitude {job.min_altitude:.1f}"

        horizon = self.context.horizon
        if job.enforce_artificial_horizon and horizon is not None:
            ok, reason = horizon.is_altitude_ok(azimuth, altitude)
            if not ok:
                return False, reason

        return True, ""

    def satisfies_moon_constraint(self, job, when: datetime) -> Tuple[bool, str]:
        if not job.has_min_moon_separation():
            return True, ""
        separation = self.current_moon_separation(job, when)
        if separation < job.min_moon_separation:
            return False, f"moon separation {separation:.1f} < minMoonSeparation {job.min_moon_separation:.1f}"
        return True, ""

    def satisfies_constraints(self, job, when: datetime,
                              azimuth: Optional[float] = None,
                              altitude: Optional[float] = None) -> Tuple[bool, str]:
        """
        Check every constraint of the job at `when`.

        Azimuth and altitude are computed when not supplied.

        Returns:
            (ok, reason) with a non-empty reason when ok is False
        """
        if azimuth is None or altitude is None:
            altitude, azimuth, _ = self.horizontal(job.target, when)

        ok, reason = self.satisfies_altitude_constraint(job, azimuth, altitude)
        if not ok:
            return False, reason

        ok, reason = self.satisfies_moon_constraint(job, when)
        if not ok:
            return False, reason

        if job.enforce_twilight:
            night, _, _ = self.runs_during_astronomical_night(when)
            if not night:
                return False, "twilight"

        if job.enforce_weather and self.context.weather == WeatherState.ALERT:
            return False, "weather alert"

        return True, ""

    # ------------------------------------------------------------------
    # Moon
    # ------------------------------------------------------------------

    def current_moon_separation(self, job, when: datetime) -> float:
        """Angular distance between target and Moon in degrees."""
        return self.context.moon_separation_at(job.target, when)

    def moon_separation_score(self, job, when: datetime) -> int:
        """
        Score the Moon's interference with the target, 0 (worst) to 20.

        The score grows with separation**1.7 so closeness is penalized more
        steeply than distance is rewarded. A Moon below the horizon or
        unlit scores the maximum.
        """
        max_score = self.config.MOON_SCORE_MAX
        moon = self.context.moon_state_at(job.target, when)
        illumination = moon.illumination * 100.0
        z_moon = 90.0 - moon.altitude

        if illumination <= 0.0 or z_moon >= 90.0:
            return max_score

        target_alt, _ = self.altitude(job.target, when)
        z_target = max(90.0 - target_alt, 1.0)

        moon_effect = (moon.separation ** 1.7 * z_moon ** 0.5) / (z_target ** 1.1 * illumination ** 0.5)
        moon_effect = float(np.clip(moon_effect, 0.0, 100.0))

        return int(moon_effect * max_score / 100.0)

    # ------------------------------------------------------------------
    # Twilight
    # ------------------------------------------------------------------

    def runs_during_astronomical_night(self, when: datetime,
                                       dawn: Optional[datetime] = None,
                                       dusk: Optional[datetime] = None
                                       ) -> Tuple[bool, Optional[datetime], Optional[datetime]]:
        """
        Whether `when` lies between astronomical dusk and the following dawn.

        Dawn and dusk must be the first events after `when`; they are
        computed when not supplied. If the next event is a dawn, `when` is in
        the night, less the pre-dawn margin.

        Returns:
            (night, min_dawn_dusk, next_possible_success) where the hint is
            the next dusk when not in the night
        """
        if dawn is None and dusk is None:
            dawn, dusk = self.context.dawn_dusk_after(when)

        if dawn is None and dusk is None:
            # No twilight event within a day: polar day or polar night
            night = self.context.is_astronomical_night(when)
            return night, None, None

        early_dawn = None
        if dawn is not None:
            early_dawn = dawn - timedelta(minutes=abs(self.config.PRE_DAWN_MINUTES))

        min_dawn_dusk = min(e for e in (early_dawn, dusk) if e is not None)
        night = (dawn is not None and (dusk is None or dawn < dusk) and when <= early_dawn)

        return night, min_dawn_dusk, (None if night else dusk)
