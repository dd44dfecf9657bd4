#!/usr/bin/env python3
"""
Utility functions shared across pysbr: logging, random state handling
and sparse matrix statistics.
"""

import logging
from typing import Optional, Union

import numpy as np
import pandas as pd
from numpy.random import RandomState
from scipy import sparse

_LOG_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}


def get_logger(log_level: int = 0, obj: Optional[object] = None) -> logging.Logger:
    """Get a logger named after the module (and class) of `obj`.

    Args:
        log_level: 0 = warnings only, 1 = info, 2 = debug
        obj: Instance or class the logger belongs to (optional)

    Returns:
        Configured logging.Logger
    """
    name = 'pysbr'
    if obj is not None:
        cls = obj if isinstance(obj, type) else type(obj)
        name = f"{cls.__module__}.{cls.__name__}"

    logger = logging.getLogger(name)
    logger.setLevel(_LOG_LEVELS.get(log_level, logging.DEBUG))
    return logger


def check_random_state(
    random_state: Optional[Union[int, RandomState]] = None
) -> RandomState:
    """Turn a seed (or None) into a RandomState; pass RandomState through."""
    if isinstance(random_state, RandomState):
        return random_state
    return RandomState(random_state)


def derive_seeds(rng: RandomState, size: int) -> np.ndarray:
    """Draw `size` independent 32-bit seeds from `rng`."""
    return rng.randint(0, np.iinfo(np.int32).max, size=size)


def get_sparse_matrix_stats(matrix: sparse.spmatrix) -> dict:
    """ Get basic statistics about a sparse matrix."""
    coo = matrix.tocoo()
    stats = {
        "shape": coo.shape,
        "nnz": coo.nnz,
        "density": coo.nnz / max((coo.shape[0] * coo.shape[1]), 1),
        "empty_rows": coo.shape[0] - len(np.unique(coo.row)),
        "empty_cols": coo.shape[1] - len(np.unique(coo.col)),
    }
    return stats


def format_sparse_matrix_stats(matrix: sparse.spmatrix) -> str:
    """Compact single-line stats about a sparse matrix."""
    stats = get_sparse_matrix_stats(matrix)
    return (
        f"({stats['shape'][0]:6}x{stats['shape'][1]:6}) nnz={stats['nnz']:10,} "
        f"({stats['density']:5.3%}), "
        f"empty rows/cols={stats['empty_rows']:6}/{stats['empty_cols']:6}"
    )


def series_to_categorical_int(
    series: pd.Series
) -> pd.Series:
    """
    Converts a pandas Series to categorical integers.

    Args:
        series: The input Series to convert.

    Returns:
        A Series of integers representing the categorical codes.
    """
    if not isinstance(series, pd.Series):
        raise TypeError("Input must be a pandas Series.")

    return series.astype('category').cat.codes
