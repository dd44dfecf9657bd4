"""
Pairwise ranking losses over sampled negatives.

Every loss takes the positive score of each step, the scores of the
candidate negatives drawn for that step and a mask telling which of the
candidates are usable, and returns one non-negative loss per step.
"""

from enum import Enum
from typing import Callable

import torch
import torch.nn.functional as F


class LossType(str, Enum):
    """Supported ranking losses."""

    WARP = 'warp'
    BPR = 'bpr'
    HINGE = 'hinge'


def _first_true(mask):
    """Index of the first True per row and whether a row has any."""
    found = mask.any(dim=1)
    first = mask.to(torch.int8).argmax(dim=1)
    return first, found


def _pick(negative_ratings, index):
    """Select one negative score per step."""
    rows = torch.arange(negative_ratings.shape[0], device=index.device)
    return negative_ratings[rows, index]


def warp_loss(positive_ratings, negative_ratings, valid):
    """
    Compute WARP loss with sequential negative sampling.

    Candidates are visited in the order they were drawn. The first valid
    candidate that violates the margin is used, later ones are ignored.
    A step with no violation inside the trial budget costs nothing.

    Parameters:
    -----------
    positive_ratings : torch.Tensor
        Scores of the true next items, shape (num_steps,)
    negative_ratings : torch.Tensor
        Scores of the candidates, shape (num_steps, num_trials)
    valid : torch.Tensor
        Boolean mask of usable candidates, shape (num_steps, num_trials)

    Returns:
    --------
    loss : torch.Tensor
        Per-step loss, shape (num_steps,)
    """
    margins = 1.0 - positive_ratings.unsqueeze(1) + negative_ratings
    violating = valid & (margins.detach() > 0)
    first, found = _first_true(violating)

    # subgradient of the hinge: -1 on the positive, +1 on the violator
    loss = _pick(margins, first)
    return torch.where(found, loss, torch.zeros_like(loss))


def hinge_loss(positive_ratings, negative_ratings, valid, margin=1.0):
    """
    Compute Hinge Loss against the first usable negative of every step.

    Parameters:
    -----------
    positive_ratings : torch.Tensor
        Scores of the true next items, shape (num_steps,)
    negative_ratings : torch.Tensor
        Scores of the candidates, shape (num_steps, num_trials)
    valid : torch.Tensor
        Boolean mask of usable candidates, shape (num_steps, num_trials)
    margin : float, optional
        The margin between positive and negative samples

    Returns:
    --------
    loss : torch.Tensor
        Per-step loss, shape (num_steps,)
    """
    first, found = _first_true(valid)
    difference = positive_ratings - _pick(negative_ratings, first)
    loss = F.relu(margin - difference)
    return torch.where(found, loss, torch.zeros_like(loss))


def bpr_loss(positive_ratings, negative_ratings, valid):
    """
    Compute Bayesian Personalized Ranking (BPR) loss against the first
    usable negative of every step.

    Parameters:
    -----------
    positive_ratings : torch.Tensor
        Scores of the true next items, shape (num_steps,)
    negative_ratings : torch.Tensor
        Scores of the candidates, shape (num_steps, num_trials)
    valid : torch.Tensor
        Boolean mask of usable candidates, shape (num_steps, num_trials)

    Returns:
    --------
    loss : torch.Tensor
        Per-step loss, shape (num_steps,)
    """
    first, found = _first_true(valid)
    difference = positive_ratings - _pick(negative_ratings, first)
    # logsigmoid does not overflow for large negative differences
    loss = -F.logsigmoid(difference)
    return torch.where(found, loss, torch.zeros_like(loss))


_LOSSES = {
    LossType.WARP: warp_loss,
    LossType.BPR: bpr_loss,
    LossType.HINGE: hinge_loss,
}


def get_loss_function(loss: LossType) -> Callable:
    """Look up the loss function for a LossType (or its string value)."""
    return _LOSSES[LossType(loss)]
