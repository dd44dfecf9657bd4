"""
Shared synthetic datasets for the test suite.
"""
import numpy as np
import pytest

from pysbr import Interactions


def make_cyclic_interactions(num_users=8, num_items=10, length=6):
    """Every user walks the item ids in order, starting at a different item."""
    users, items, timestamps = [], [], []
    for user in range(num_users):
        for step in range(length):
            users.append(user)
            items.append((user + step) % num_items)
            timestamps.append(step)
    return Interactions(
        user_ids=np.array(users),
        item_ids=np.array(items),
        timestamps=np.array(timestamps),
        num_users=num_users,
        num_items=num_items,
        name='cyclic',
    )


@pytest.fixture
def cyclic_interactions():
    """8 users x 10 items, 6 chronological interactions per user"""
    return make_cyclic_interactions()


@pytest.fixture
def three_user_interactions():
    """3 users, 5 items, each user interacting with items 0, 1, 2 in order"""
    return Interactions(
        user_ids=np.array([0, 0, 0, 1, 1, 1, 2, 2, 2]),
        item_ids=np.array([0, 1, 2, 0, 1, 2, 0, 1, 2]),
        timestamps=np.array([0, 1, 2, 0, 1, 2, 0, 1, 2]),
        num_users=3,
        num_items=5,
    )
