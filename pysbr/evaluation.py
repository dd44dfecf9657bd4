"""
Ranking metrics for fitted sequence models.
"""

from typing import Optional, Union

import numpy as np

from .exceptions import DataError
from .interactions import CompressedInteractions, Interactions, UserSequence


def _target_rank(scores: np.ndarray, target: int) -> int:
    """1-based rank of `target`; ties go to the lowest item id."""
    target_score = scores[target]
    higher = np.count_nonzero(scores > target_score)
    tied_before = np.count_nonzero(scores[:target] == target_score)
    return 1 + higher + tied_before


def _as_compressed(interactions, num_items: int) -> CompressedInteractions:
    if isinstance(interactions, Interactions):
        interactions = interactions.to_compressed()
    if interactions.num_items > num_items:
        raise DataError(
            f"Data has {interactions.num_items} items, model was built "
            f"for {num_items}"
        )
    return interactions


def _context_and_target(
    sequence: UserSequence,
    known: Optional[UserSequence],
):
    """Items preceding the user's last evaluated interaction, and that item.

    Known interactions are merged with the evaluated ones by timestamp,
    known records first on ties.
    """
    if known is None or known.is_empty():
        context = sequence.item_ids[:-1].astype(np.int64)
        return context, int(sequence.item_ids[-1])

    items = np.concatenate((known.item_ids, sequence.item_ids))
    order = np.argsort(
        np.concatenate((known.timestamps, sequence.timestamps)),
        kind='stable',
    )
    position = int(np.flatnonzero(order == len(items) - 1)[0])
    return items[order[:position]].astype(np.int64), int(items[-1])


def mrr_score(
    model,
    interactions: Union[Interactions, CompressedInteractions],
    history: Optional[Union[Interactions, CompressedInteractions]] = None,
) -> float:
    """Compute Mean Reciprocal Rank of each user's last interaction.

    For every user with at least one interaction, the model is fed all
    items before the last one and the last item is ranked among all items.
    Items seen earlier (other than the target) are excluded from the
    ranking.

    Args:
        model: Fitted ImplicitSequenceModel
        interactions: Evaluation interactions
        history: Interactions known before evaluation, usually the training
            split. Each user's known interactions are merged into their
            sequence by timestamp before ranking.

    Returns:
        MRR value in (0, 1]
    """
    interactions = _as_compressed(interactions, model.num_items)
    if history is not None:
        history = _as_compressed(history, model.num_items)
        if history.num_users != interactions.num_users:
            raise DataError(
                f"History has {history.num_users} users, evaluation data "
                f"has {interactions.num_users}"
            )

    reciprocal_ranks = []
    for sequence in interactions.iter_users():
        if sequence.is_empty():
            continue
        known = None
        if history is not None:
            known = history.get_user(sequence.user_id)
        context, target = _context_and_target(sequence, known)

        scores = model.predict(context).astype(np.float64)
        seen = context[context != target]
        scores[seen] = -np.inf
        reciprocal_ranks.append(1.0 / _target_rank(scores, target))

    if not reciprocal_ranks:
        raise DataError("No users with interactions to evaluate")

    return float(np.mean(reciprocal_ranks))
