#!/usr/bin/env python3
"""
User-item interaction sequences and their compressed sparse views.
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse import csc_matrix, csr_matrix

from .exceptions import DataError, OutOfRange
from .utils import format_sparse_matrix_stats, series_to_categorical_int

# pylint: disable=invalid-name


def _frozen(values, dtype) -> np.ndarray:
    """Copy `values` into a read-only 1-d array."""
    arr = np.array(values, dtype=dtype).reshape(-1)
    arr.setflags(write=False)
    return arr


class Interactions:
    """
    Immutable list of (user, item, timestamp) interaction records.

    Records are kept exactly as supplied, repeated (user, item) pairs
    included, and are the single source of truth for every derived view.
    """

    def __init__(
        self,
        user_ids: Union[list, np.ndarray],
        item_ids: Union[list, np.ndarray],
        timestamps: Optional[Union[list, np.ndarray]] = None,
        num_users: Optional[int] = None,
        num_items: Optional[int] = None,
        name: str = 'interactions',
    ) -> None:
        user_ids = _frozen(user_ids, np.int64)
        item_ids = _frozen(item_ids, np.int64)
        if timestamps is None:
            timestamps = np.arange(len(user_ids))
        timestamps = _frozen(timestamps, np.int64)

        # check compatibility of user inputs
        if not (len(user_ids) == len(item_ids) == len(timestamps)):
            raise DataError(
                f"Length mismatch: {len(user_ids)} users, "
                f"{len(item_ids)} items, {len(timestamps)} timestamps"
            )
        if len(user_ids) > 0:
            if user_ids.min() < 0 or item_ids.min() < 0:
                raise DataError("User and item ids must be non-negative")
            if timestamps.min() < 0:
                raise DataError("Timestamps must be non-negative")

        # deal with num_users/num_items
        inferred_users = int(user_ids.max()) + 1 if len(user_ids) else 0
        inferred_items = int(item_ids.max()) + 1 if len(item_ids) else 0
        if num_users is None:
            num_users = inferred_users
        elif num_users < inferred_users:
            raise DataError(
                f"num_users={num_users} incompatible with max user id "
                f"{inferred_users - 1}"
            )
        if num_items is None:
            num_items = inferred_items
        elif num_items < inferred_items:
            raise DataError(
                f"num_items={num_items} incompatible with max item id "
                f"{inferred_items - 1}"
            )

        self.name = name
        self._user_ids = user_ids
        self._item_ids = item_ids
        self._timestamps = timestamps
        self._num_users = int(num_users)
        self._num_items = int(num_items)

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        user_col: str = 'user_id',
        item_col: str = 'item_id',
        timestamp_col: Optional[str] = 'timestamp',
        encode_ids: bool = False,
        num_users: Optional[int] = None,
        num_items: Optional[int] = None,
        name: str = 'interactions',
    ) -> 'Interactions':
        """Build interactions from a pandas DataFrame.

        Args:
            df: Frame with one row per interaction
            user_col: Column holding user ids
            item_col: Column holding item ids
            timestamp_col: Column holding timestamps (None = row order)
            encode_ids: Map arbitrary ids to dense integer codes
            num_users: Total number of users (inferred if None)
            num_items: Total number of items (inferred if None)
            name: Dataset name

        Returns:
            Interactions instance
        """
        missing = [
            col for col in (user_col, item_col, timestamp_col)
            if col is not None and col not in df.columns
        ]
        if missing:
            raise DataError(f"Missing columns in dataframe: {missing}")

        users = df[user_col]
        items = df[item_col]
        if encode_ids:
            users = series_to_categorical_int(users)
            items = series_to_categorical_int(items)

        timestamps = None
        if timestamp_col is not None:
            timestamps = df[timestamp_col].to_numpy()

        return cls(
            user_ids=users.to_numpy(),
            item_ids=items.to_numpy(),
            timestamps=timestamps,
            num_users=num_users,
            num_items=num_items,
            name=name,
        )

    def __len__(self) -> int:
        return len(self._user_ids)

    def __repr__(self) -> str:
        """Return string representation of the dataset."""
        return (
            f"{self.__class__.__name__}({self.name})\n"
            f"  R: {format_sparse_matrix_stats(self.to_coo())}"
        )

    def is_empty(self) -> bool:
        """Check if there are no interactions."""
        return len(self) == 0

    @property
    def user_ids(self) -> np.ndarray:
        """User id of every record."""
        return self._user_ids

    @property
    def item_ids(self) -> np.ndarray:
        """Item id of every record."""
        return self._item_ids

    @property
    def timestamps(self) -> np.ndarray:
        """Timestamp of every record."""
        return self._timestamps

    @property
    def num_users(self) -> int:
        """Number of users"""
        return self._num_users

    @property
    def num_items(self) -> int:
        """Number of items"""
        return self._num_items

    @property
    def shape(self) -> tuple:
        """(num_users, num_items)"""
        return (self._num_users, self._num_items)

    def subset(self, indices: np.ndarray, name: Optional[str] = None) -> 'Interactions':
        """Return the records selected by an index or boolean mask array."""
        return Interactions(
            user_ids=self._user_ids[indices],
            item_ids=self._item_ids[indices],
            timestamps=self._timestamps[indices],
            num_users=self._num_users,
            num_items=self._num_items,
            name=name or self.name,
        )

    def to_coo(self) -> sparse.coo_matrix:
        """Interaction counts as a COO matrix (repeated pairs summed)."""
        return sparse.coo_matrix(
            (np.ones(len(self), dtype=np.float32),
             (self._user_ids, self._item_ids)),
            shape=self.shape,
        )

    def to_compressed(self) -> 'CompressedInteractions':
        """Convert to row/column compressed representation."""
        return CompressedInteractions(self)


@dataclass(frozen=True)
class UserSequence:
    """A single user's interactions, earliest first."""

    user_id: int
    item_ids: np.ndarray
    timestamps: np.ndarray

    def __len__(self) -> int:
        return len(self.item_ids)

    def is_empty(self) -> bool:
        """Check if the user has no interactions."""
        return len(self) == 0


def _compress(
    major: np.ndarray,
    minor: np.ndarray,
    timestamps: np.ndarray,
    num_major: int,
):
    """Sort records by (major, timestamp, record order) and build pointers."""
    order = np.lexsort((np.arange(len(major)), timestamps, major))
    pointers = np.zeros(num_major + 1, dtype=np.int64)
    np.cumsum(np.bincount(major, minlength=num_major), out=pointers[1:])
    return order, pointers, minor[order]


class CompressedInteractions:
    """
    Read-only compressed views of an Interactions object.

    The row view (CSR) lists each user's items in chronological order,
    the column view (CSC) lists the users of each item. Both views are
    derived from the same records and hold exactly the same entries.
    """

    def __init__(self, interactions: Interactions) -> None:
        self.name = interactions.name
        self._num_users = interactions.num_users
        self._num_items = interactions.num_items
        shape = interactions.shape
        ones = np.ones(len(interactions), dtype=np.float32)

        # row view, chronological within each user
        order, user_pointers, items = _compress(
            interactions.user_ids,
            interactions.item_ids,
            interactions.timestamps,
            self._num_users,
        )
        self._user_pointers = _frozen(user_pointers, np.int64)
        self._user_items = _frozen(items, np.int64)
        self._timestamps = _frozen(interactions.timestamps[order], np.int64)
        self._csr = csr_matrix((ones, items, user_pointers), shape=shape)

        # column view for per-item access
        _, item_pointers, users = _compress(
            interactions.item_ids,
            interactions.user_ids,
            interactions.timestamps,
            self._num_items,
        )
        self._item_pointers = _frozen(item_pointers, np.int64)
        self._item_users = _frozen(users, np.int64)
        self._csc = csc_matrix((ones, users, item_pointers), shape=shape)

    def __len__(self) -> int:
        return self._csr.nnz

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.name})\n"
            f"  R: {format_sparse_matrix_stats(self._csr)}"
        )

    @property
    def row_matrix(self) -> csr_matrix:
        """Copy of the row compressed view (users x items)."""
        return self._csr.copy()

    @property
    def column_matrix(self) -> csc_matrix:
        """Copy of the column compressed view (users x items)."""
        return self._csc.copy()

    @property
    def num_users(self) -> int:
        """Number of users"""
        return self._num_users

    @property
    def num_items(self) -> int:
        """Number of items"""
        return self._num_items

    @property
    def shape(self) -> tuple:
        """(num_users, num_items)"""
        return (self._num_users, self._num_items)

    @property
    def nnz(self) -> int:
        """Number of stored interactions"""
        return self._csr.nnz

    def get_user(self, user_id: int) -> UserSequence:
        """Get a particular user's interactions, earliest first."""
        if not 0 <= user_id < self._num_users:
            raise OutOfRange(
                f"User {user_id} outside [0, {self._num_users})"
            )
        start = self._user_pointers[user_id]
        stop = self._user_pointers[user_id + 1]
        return UserSequence(
            user_id=int(user_id),
            item_ids=self._user_items[start:stop],
            timestamps=self._timestamps[start:stop],
        )

    def iter_users(self) -> Iterator[UserSequence]:
        """Iterate over all users, including those without interactions."""
        for user_id in range(self._num_users):
            yield self.get_user(user_id)

    def get_item_users(self, item_id: int) -> np.ndarray:
        """Users that interacted with `item_id`."""
        if not 0 <= item_id < self._num_items:
            raise OutOfRange(
                f"Item {item_id} outside [0, {self._num_items})"
            )
        start = self._item_pointers[item_id]
        stop = self._item_pointers[item_id + 1]
        return self._item_users[start:stop]

    def user_lengths(self) -> np.ndarray:
        """Number of interactions per user."""
        return np.diff(self._user_pointers)

    def item_popularity(self) -> np.ndarray:
        """Number of interactions per item."""
        return np.diff(self._item_pointers)

    def to_interactions(self) -> Interactions:
        """Convert back to an Interactions object."""
        user_ids = np.repeat(
            np.arange(self._num_users, dtype=np.int64), self.user_lengths()
        )
        return Interactions(
            user_ids=user_ids,
            item_ids=self._user_items,
            timestamps=self._timestamps,
            num_users=self._num_users,
            num_items=self._num_items,
            name=self.name,
        )
