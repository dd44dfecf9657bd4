"""
Negative sampling with a fixed trial budget
"""

from enum import Enum
from typing import Optional, Tuple

import numpy as np
from numpy.random import RandomState

from .exceptions import ConfigError, DataError


class NegativeSampling(str, Enum):
    """Distribution negative candidates are drawn from."""

    UNIFORM = 'uniform'
    POPULARITY = 'popularity'


class NegativeSampler:
    """
    Draws candidate negative items for every prediction step.

    Each step gets `num_trials` candidates. A candidate the user has
    already interacted with is marked invalid but still uses up a trial,
    which bounds the cost per step even for very active users.
    """

    def __init__(
        self,
        num_items: int,
        num_trials: int = 10,
        strategy: NegativeSampling = NegativeSampling.UNIFORM,
        popularity: Optional[np.ndarray] = None,
    ) -> None:
        if num_items <= 0:
            raise ConfigError(f"num_items must be positive, got {num_items}")
        if num_trials <= 0:
            raise ConfigError(
                f"num_trials must be positive, got {num_trials}"
            )

        self.num_items = num_items
        self.num_trials = num_trials
        self.strategy = NegativeSampling(strategy)
        self._cdf = None

        if self.strategy is NegativeSampling.POPULARITY:
            if popularity is None or len(popularity) != num_items:
                raise DataError(
                    "Popularity sampling needs one count per item"
                )
            counts = np.asarray(popularity, dtype=np.float64)
            if counts.sum() <= 0:
                raise DataError("Item popularity counts are all zero")
            self._cdf = np.cumsum(counts / counts.sum())

    def _draw(self, size: Tuple[int, int], rng: RandomState) -> np.ndarray:
        """Draw raw candidate item ids."""
        if self._cdf is None:
            return rng.randint(0, self.num_items, size=size)
        candidates = np.searchsorted(
            self._cdf, rng.random_sample(size), side='right'
        )
        return np.minimum(candidates, self.num_items - 1)

    def sample(
        self,
        num_steps: int,
        exclude: np.ndarray,
        rng: RandomState,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Sample negatives for `num_steps` prediction steps.

        Args:
            num_steps: Number of prediction steps
            exclude: Items the user interacted with
            rng: Random source

        Returns:
            (negatives, valid) arrays of shape (num_steps, num_trials)
        """
        negatives = self._draw((num_steps, self.num_trials), rng)
        valid = ~np.isin(negatives, exclude)
        return negatives.astype(np.int64), valid
