"""
Start Time Cache

Memo of next-possible-start-time computations for one job. The scheduling
loop asks every job for its next start time on every iteration, with mostly
the same arguments, and each answer costs up to a day of minute steps.

The cache is mutated from query paths of the job (interior mutability): a
job holds it by reference and the job's read-only methods add to it. It is
never pruned entry by entry. Anything that changes the answer (geography,
horizon, constraints) changes it for every entry, so the owner clears it
wholesale, and the scheduler clears it at the start of each full
evaluation pass.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartTimeComputation:
    """One cached query: search window and its result (None = not found)"""
    from_: datetime
    until: Optional[datetime]
    result: Optional[datetime]


class StartTimeCache:
    """Ordered list of (from, until, result) computations"""

    def __init__(self, horizon: Optional[timedelta] = None, exact_bounds: bool = False):
        # Longest window a single search covers, None when unknown
        self.horizon = horizon
        # Only reuse a computation for the very same (from, until)
        self.exact_bounds = exact_bounds
        self._computations: List[StartTimeComputation] = []
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._computations)

    def _beyond_horizon(self, computation: StartTimeComputation) -> bool:
        if computation.until is None:
            return True
        return self.horizon is not None and computation.until - computation.from_ > self.horizon

    def check(self, from_: datetime, until: Optional[datetime]) -> Tuple[bool, Optional[datetime], Optional[datetime]]:
        """
        Look up a query window.

        A stored computation answers the query when its window contains the
        query window: stored from <= query from, and stored until at least as
        late as the query until (None is unbounded). A stored start time that
        precedes the query start cannot be reused. A stored start time past
        the query until means not found within the query window.

        Returns:
            (hit, result, adjusted_from) where adjusted_from is the stored
            from when it precedes the query from, else None
        """
        for computation in self._computations:
            if self.exact_bounds and (computation.from_ != from_ or computation.until != until):
                continue
            if computation.from_ > from_:
                continue
            if computation.until is not None and (until is None or until > computation.until):
                continue
            if computation.result is not None and computation.result < from_:
                continue
            # A search stops at the horizon, which moves with from
            if computation.result is None and computation.from_ != from_ and self._beyond_horizon(computation):
                continue

            self.hits += 1
            result = computation.result
            if result is not None and until is not None and result > until:
                result = None
            adjusted_from = computation.from_ if computation.from_ < from_ else None
            return True, result, adjusted_from

        self.misses += 1
        return False, None, None

    def add(self, from_: datetime, until: Optional[datetime], result: Optional[datetime]):
        """Record a computation."""
        self._computations.append(StartTimeComputation(from_, until, result))

    def clear(self):
        """Forget every computation."""
        if self._computations:
            logger.debug(f"Clearing {len(self._computations)} cached start time computations")
        self._computations.clear()
