#!/usr/bin/env python3
"""
Train/test splitting of interaction sequences.

All splitters keep num_users/num_items and timestamps of the input, take
an explicit random source (seed or RandomState) and put every record in
exactly one of the two outputs.
"""

from typing import Optional, Tuple, Union

import numpy as np
from numpy.random import RandomState

from .exceptions import ConfigError, DataError
from .interactions import Interactions
from .utils import check_random_state


def _check_split_inputs(
    interactions: Interactions,
    test_fraction: float
) -> None:
    """Validate the inputs shared by all splitters."""
    if not isinstance(interactions, Interactions):
        raise TypeError(
            f"Expected Interactions, got {type(interactions).__name__}"
        )
    if not 0.0 <= test_fraction <= 1.0:
        raise ConfigError(
            f"test_fraction must be between 0 and 1 inclusive, "
            f"got {test_fraction}"
        )
    if interactions.is_empty():
        raise DataError("Cannot split an empty set of interactions")


def train_test_split(
    interactions: Interactions,
    random_state: Optional[Union[int, RandomState]] = None,
    test_fraction: float = 0.2,
) -> Tuple[Interactions, Interactions]:
    """Randomly split individual interactions between train and test.

    Users can end up in both sets, and a user's test interactions are not
    necessarily later than their train interactions.

    Args:
        interactions: Interactions to split
        random_state: Random seed or RandomState
        test_fraction: Fraction of interactions held out for testing

    Returns:
        (train, test) Interactions
    """
    _check_split_inputs(interactions, test_fraction)
    rng = check_random_state(random_state)

    idx = np.arange(len(interactions))
    rng.shuffle(idx)
    n_test = int(test_fraction * len(interactions))

    test_idx = np.sort(idx[:n_test])
    train_idx = np.sort(idx[n_test:])
    return (
        interactions.subset(train_idx, name=f"{interactions.name}_train"),
        interactions.subset(test_idx, name=f"{interactions.name}_test"),
    )


def user_based_split(
    interactions: Interactions,
    random_state: Optional[Union[int, RandomState]] = None,
    test_fraction: float = 0.2,
) -> Tuple[Interactions, Interactions]:
    """Split interactions so that no user is in both train and test.

    Each user independently goes to the test set with probability
    `test_fraction`, taking all of their interactions along. Useful for
    measuring generalization to users never seen during training.

    Args:
        interactions: Interactions to split
        random_state: Random seed or RandomState
        test_fraction: Probability of a user being held out

    Returns:
        (train, test) Interactions
    """
    _check_split_inputs(interactions, test_fraction)
    rng = check_random_state(random_state)

    # one draw per user, independent of how many records each user has
    is_test_user = rng.random_sample(interactions.num_users) < test_fraction
    is_test = is_test_user[interactions.user_ids]

    return (
        interactions.subset(~is_test, name=f"{interactions.name}_train"),
        interactions.subset(is_test, name=f"{interactions.name}_test"),
    )


def sequence_based_split(
    interactions: Interactions,
    random_state: Optional[Union[int, RandomState]] = None,
    test_fraction: float = 0.2,
) -> Tuple[Interactions, Interactions]:
    """Hold out the most recent interactions of every user.

    The number of held-out interactions of a user with n interactions is
    drawn from Binomial(n, test_fraction) and capped at n - 1, so every
    user keeps at least one training interaction and every test
    interaction comes after all of that user's training interactions.

    Args:
        interactions: Interactions to split
        random_state: Random seed or RandomState
        test_fraction: Expected fraction of each user's interactions held out

    Returns:
        (train, test) Interactions
    """
    _check_split_inputs(interactions, test_fraction)
    rng = check_random_state(random_state)

    compressed = interactions.to_compressed()
    lengths = compressed.user_lengths()
    n_test = np.minimum(
        rng.binomial(lengths, test_fraction),
        np.maximum(lengths - 1, 0)
    )

    # position of every chronologically sorted record within its user
    pointers = np.concatenate(([0], np.cumsum(lengths)))
    user_ids = np.repeat(np.arange(compressed.num_users), lengths)
    position = np.arange(compressed.nnz) - pointers[user_ids]
    is_test = position >= (lengths - n_test)[user_ids]

    sorted_records = compressed.to_interactions()
    return (
        sorted_records.subset(~is_test, name=f"{interactions.name}_train"),
        sorted_records.subset(is_test, name=f"{interactions.name}_test"),
    )
