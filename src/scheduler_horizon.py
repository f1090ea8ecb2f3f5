"""
Artificial Horizon

User-drawn horizon profile: trees, buildings and roof lines expressed as
azimuth/altitude polylines. A target behind an enabled region is occluded.
"""

import logging
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class HorizonRegion:
    """
    One horizon polyline.

    Points are (azimuth, altitude) pairs in degrees. The region covers the
    azimuth span of its points; outside that span it imposes nothing. A
    ceiling region blocks targets above the line instead of below it.
    """
    name: str
    points: List[Tuple[float, float]] = field(default_factory=list)
    enabled: bool = True
    ceiling: bool = False

    def __post_init__(self):
        if len(self.points) < 2:
            raise ValueError(f"horizon region {self.name!r} needs at least two points")
        if any(not (0.0 <= az <= 360.0) for az, _ in self.points):
            raise ValueError(f"horizon region {self.name!r} has azimuths outside [0, 360]")
        self.points = sorted((float(az), float(alt)) for az, alt in self.points)
        self._az = np.array([p[0] for p in self.points])
        self._alt = np.array([p[1] for p in self.points])

    def covers(self, azimuth: float) -> bool:
        return self._az[0] <= azimuth <= self._az[-1]

    def limit_at(self, azimuth: float) -> Optional[float]:
        """Interpolated line altitude at the azimuth, None outside the region."""
        azimuth = azimuth % 360.0
        if not self.covers(azimuth):
            return None
        return float(np.interp(azimuth, self._az, self._alt))


class ArtificialHorizon:
    """Collection of horizon regions queried by azimuth and altitude"""

    def __init__(self, regions: Optional[Sequence[HorizonRegion]] = None):
        self.regions: List[HorizonRegion] = list(regions or [])

    def add_region(self, region: HorizonRegion):
        self.regions.append(region)

    def altitude_constraints_exist(self) -> bool:
        """True if at least one region is enabled."""
        return any(region.enabled for region in self.regions)

    def is_altitude_ok(self, azimuth: float, altitude: float) -> Tuple[bool, str]:
        """
        Check a position against every enabled region.

        Returns:
            (ok, reason) where reason explains which region blocks the position
        """
        for region in self.regions:
            if not region.enabled:
                continue
            limit = region.limit_at(azimuth)
            if limit is None:
                continue
            if region.ceiling and altitude > limit:
                return False, (f"altitude {altitude:.1f} above ceiling {region.name} "
                               f"({limit:.1f}) at azimuth {azimuth:.1f}")
            if not region.ceiling and altitude < limit:
                return False, (f"altitude {altitude:.1f} below horizon {region.name} "
                               f"({limit:.1f}) at azimuth {azimuth:.1f}")
        return True, ""

    def is_below_horizon(self, azimuth: float, altitude: float) -> bool:
        ok, _ = self.is_altitude_ok(azimuth, altitude)
        return not ok
