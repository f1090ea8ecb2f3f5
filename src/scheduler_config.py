"""
Scheduler Configuration

Tunable constants shared by the observation-job scheduling core, and the
logging setup used by the command line entry point.
"""

import logging


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Config:
    """Configuration constants for the scheduler"""

    # Failure handling
    MAX_FAILURE_ATTEMPTS = 5

    # Iteration timer
    DEFAULT_UPDATE_PERIOD_MS = 1000

    # Time search
    MAX_SEARCH_MINUTES = 24 * 60
    DEFAULT_SEARCH_INCREMENT = 1  # minutes
    MISSED_START_TOLERANCE = 500  # seconds late before a START_AT job is missed
    SETTING_ALTITUDE_CUTOFF = 3.0  # degrees above min altitude for setting targets

    # Twilight
    ASTRONOMICAL_TWILIGHT_ALTITUDE = -18.0  # degrees
    DAWN_OFFSET_HOURS = 0.0
    DUSK_OFFSET_HOURS = 0.0
    PRE_DAWN_MINUTES = 0.0

    # Mount altitude limits
    ENABLE_ALTITUDE_LIMITS = False
    MIN_MOUNT_ALTITUDE = 0.0  # degrees
    MAX_MOUNT_ALTITUDE = 90.0  # degrees

    # Moon
    MOON_SCORE_MAX = 20

    # Aborted jobs wait this long before being evaluated again
    ABORT_BACKOFF_SEC = 300

    # Park the observatory when the next job starts this much later
    PREEMPTIVE_SHUTDOWN = False
    PREEMPTIVE_SHUTDOWN_HOURS = 2.0

    # Simulated duration of a job that has no estimate
    DEFAULT_JOB_DURATION_SEC = 3600

    # Profiles
    DEFAULT_PROFILE = "Default"


def configure_logging(verbose: int = 0):
    """Configure root logging the way the scheduler command line does"""
    logging.basicConfig(
        level=logging.DEBUG if verbose > 0 else logging.INFO,
        format=LOG_FORMAT
    )
