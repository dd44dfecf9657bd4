#!/usr/bin/env python
"""
Implicit feedback sequence model: item embeddings read by a sequence model
that predicts the next item a user interacts with.

Training walks each user's chronological sequence, scores every next item
against sampled negatives with the configured ranking loss and updates the
parameters with a row-sparse adaptive optimizer.
"""

import sys
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

import mlflow
import numpy as np
import torch
import torch.nn as nn
from joblib import Parallel, delayed
from numpy.random import RandomState
from tqdm import tqdm

from .embeddings import EmbeddingTable
from .exceptions import DataError, NumericalError
from .hyperparameters import Hyperparameters, ModelType
from .interactions import CompressedInteractions, Interactions
from .losses import get_loss_function
from .optimizers import build_optimizer
from .sampling import NegativeSampler, NegativeSampling
from .sequence_models import EWMA, LSTM, SequenceModel
from .utils import derive_seeds, get_logger


class _UserGradients(NamedTuple):
    """Gradients of one user's sequence, computed by a worker."""

    loss: float
    num_steps: int
    item_rows: Tuple[torch.Tensor, torch.Tensor]
    bias_rows: Tuple[torch.Tensor, torch.Tensor]
    params: Dict[str, torch.Tensor]


def _sparse_rows(grad: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """(row ids, row values) of a sparse embedding gradient."""
    grad = grad.coalesce()
    return grad.indices()[0], grad.values()


def _check_finite(name: str, tensor: torch.Tensor) -> None:
    if not torch.isfinite(tensor).all():
        raise NumericalError(
            f"Non-finite gradient for {name}; try a lower learning rate"
        )


def build_sequence_model(
    hyperparameters: Hyperparameters,
    generator: Optional[torch.Generator] = None,
) -> SequenceModel:
    """Create the sequence model selected by `model_type`."""
    if hyperparameters.model_type is ModelType.EWMA:
        return EWMA(
            embedding_dim=hyperparameters.embedding_dim,
            alpha=hyperparameters.ewma_alpha,
            trainable=hyperparameters.train_alpha,
        )
    return LSTM(
        embedding_dim=hyperparameters.embedding_dim,
        variant=hyperparameters.lstm_variant,
        generator=generator,
    )


class ImplicitSequenceModel(nn.Module):
    """Next-item recommender over chronological interaction sequences."""

    def __init__(
        self,
        hyperparameters: Hyperparameters,
        log_level: int = 0,
    ) -> None:
        """Initialize an untrained model.

        Args:
            hyperparameters: Validated model configuration
            log_level: 0 = warnings only, 1 = info and progress bar, 2 = debug
        """
        super().__init__()
        self.hyperparameters = hyperparameters
        self.num_items = hyperparameters.num_items
        self.log_level = log_level
        self._logger = get_logger(log_level, self)

        # explicit random sources, nothing global
        self._rng = RandomState(hyperparameters.seed)
        generator = torch.Generator().manual_seed(hyperparameters.seed)

        self.item_embeddings = EmbeddingTable(
            num_embeddings=self.num_items,
            embedding_dim=hyperparameters.embedding_dim,
            generator=generator,
        )
        self.item_biases = EmbeddingTable(
            num_embeddings=self.num_items,
            embedding_dim=1,
            zero_init=True,
        )
        self.sequence_model = build_sequence_model(hyperparameters, generator)

        self._loss_fn = get_loss_function(hyperparameters.loss)
        self._sequence_params = {
            name: param
            for name, param in self.sequence_model.named_parameters()
            if param.requires_grad
        }
        self.optimizer = build_optimizer(
            hyperparameters.optimizer,
            self.parameters(),
            learning_rate=hyperparameters.learning_rate,
            l2_penalty=hyperparameters.l2_penalty,
        )
        self._sampler = None

    def __repr__(self) -> str:
        """String representation of the object."""
        return (
            f'{self.__class__.__name__}(\n'
            f'Items={self.num_items}\n'
            f'SequenceModel={self.sequence_model.__repr__()}\n'
            f'Loss={self.hyperparameters.loss.value}\n'
            f'Optimizer={self.hyperparameters.optimizer.value}\n)'
        )

    def _score(self, contexts: torch.Tensor, item_ids) -> torch.Tensor:
        """score = context . item_embedding + item_bias"""
        embeddings = self.item_embeddings.lookup(item_ids)
        biases = self.item_biases.lookup(item_ids)[..., 0]
        return (contexts * embeddings).sum(dim=-1) + biases

    def _build_sampler(self, compressed: CompressedInteractions) -> NegativeSampler:
        popularity = None
        if self.hyperparameters.negative_sampling is NegativeSampling.POPULARITY:
            popularity = np.zeros(self.num_items, dtype=np.int64)
            popularity[:compressed.num_items] = compressed.item_popularity()
        return NegativeSampler(
            num_items=self.num_items,
            num_trials=self.hyperparameters.num_negative_trials,
            strategy=self.hyperparameters.negative_sampling,
            popularity=popularity,
        )

    def _user_gradients(self, item_ids: np.ndarray, seed: int) -> _UserGradients:
        """Loss and gradients for one user's sequence.

        Reads the parameters but never writes them, so several users can be
        processed concurrently between two optimizer steps.
        """
        rng = RandomState(seed)
        inputs, targets = item_ids[:-1], item_ids[1:]
        negatives, valid = self._sampler.sample(len(targets), item_ids, rng)

        with torch.no_grad():
            embeddings = self.item_embeddings.lookup(inputs)
            contexts = self.sequence_model(embeddings)

        # gradient of the loss w.r.t. every context and the scored items
        contexts.requires_grad_(True)
        with torch.enable_grad():
            positive = self._score(contexts, targets)
            negative = self._score(contexts.unsqueeze(1), negatives)
            loss = self._loss_fn(
                positive, negative, torch.from_numpy(valid)
            ).sum()
            d_contexts, d_items, d_biases = torch.autograd.grad(
                loss,
                [contexts, self.item_embeddings.weight,
                 self.item_biases.weight],
            )

        loss_value = float(loss)
        if not np.isfinite(loss_value):
            raise NumericalError(
                f"Non-finite loss ({loss_value}); try a lower learning rate"
            )

        # back through the sequence to the consumed embeddings
        d_inputs, d_params = self.sequence_model.backward(
            embeddings, d_contexts
        )

        item_ids_rows, item_values = _sparse_rows(d_items)
        item_rows = (
            torch.cat([item_ids_rows, torch.as_tensor(inputs, dtype=torch.long)]),
            torch.cat([item_values, d_inputs]),
        )
        bias_rows = _sparse_rows(d_biases)

        _check_finite('item_embeddings', item_rows[1])
        _check_finite('item_biases', bias_rows[1])
        for name, grad in d_params.items():
            _check_finite(name, grad)

        return _UserGradients(
            loss=loss_value,
            num_steps=len(targets),
            item_rows=item_rows,
            bias_rows=bias_rows,
            params=d_params,
        )

    def _apply_gradients(self, results: List[_UserGradients]) -> None:
        """Reduce worker gradients in order and take one optimizer step."""
        for result in results:
            self.item_embeddings.accumulate_gradient(*result.item_rows)
            self.item_biases.accumulate_gradient(*result.bias_rows)
            for name, grad in result.params.items():
                param = self._sequence_params[name]
                if param.grad is None:
                    param.grad = grad.clone()
                else:
                    param.grad += grad
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)

    def fit(
        self,
        interactions: Union[Interactions, CompressedInteractions],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> float:
        """Train the model on chronological user sequences.

        Args:
            interactions: Training interactions
            should_stop: Polled between mini-batches; returning True stops
                fitting early

        Returns:
            Mean per-step loss over the final epoch (or over the part of the
            current epoch completed before stopping early)
        """
        if isinstance(interactions, Interactions):
            compressed = interactions.to_compressed()
        elif isinstance(interactions, CompressedInteractions):
            compressed = interactions
        else:
            raise TypeError(
                f"Expected Interactions, got {type(interactions).__name__}"
            )

        # check compatibility of data and model
        if compressed.nnz == 0:
            raise DataError("Cannot fit on empty interactions")
        if compressed.num_items > self.num_items:
            raise DataError(
                f"Data has {compressed.num_items} items, model was built "
                f"for {self.num_items}"
            )
        users = np.flatnonzero(compressed.user_lengths() >= 2)
        if len(users) == 0:
            raise DataError(
                "No user has at least two interactions to learn from"
            )

        hp = self.hyperparameters
        self._sampler = self._build_sampler(compressed)
        sequences = {
            int(u): compressed.get_user(u).item_ids.astype(np.int64)
            for u in users
        }
        self._logger.info(
            "Fitting on %d users, %d interactions", len(users), compressed.nnz
        )

        epoch_looper = tqdm(
            iterable=range(1, hp.num_epochs + 1),
            total=hp.num_epochs,
            file=sys.stdout,
            desc=hp.model_type.value.upper(),
            ncols=70,
            unit='ep',
            disable=self.log_level < 1,
        )

        mean_loss = 0.0
        stopped = False
        with Parallel(n_jobs=hp.num_threads, prefer='threads') as parallel:
            for epoch in epoch_looper:
                order = self._rng.permutation(users)
                epoch_loss, epoch_steps = 0.0, 0

                for start in range(0, len(order), hp.num_threads):
                    if should_stop is not None and should_stop():
                        stopped = True
                        break

                    batch = order[start:start + hp.num_threads]
                    seeds = derive_seeds(self._rng, len(batch))
                    if hp.num_threads == 1:
                        results = [
                            self._user_gradients(sequences[int(batch[0])], seeds[0])
                        ]
                    else:
                        results = parallel(
                            delayed(self._user_gradients)(
                                sequences[int(u)], seed
                            )
                            for u, seed in zip(batch, seeds)
                        )

                    self._apply_gradients(results)
                    epoch_loss += sum(r.loss for r in results)
                    epoch_steps += sum(r.num_steps for r in results)

                if epoch_steps > 0:
                    mean_loss = epoch_loss / epoch_steps
                if stopped:
                    self._logger.info("Stopped early in epoch %d", epoch)
                    break

                epoch_looper.set_postfix({'loss': f'{mean_loss:.4f}'})
                self._logger.debug("Epoch %d: loss %.5f", epoch, mean_loss)
                if mlflow.active_run() is not None:
                    mlflow.log_metric('train_loss', mean_loss, step=epoch)

        epoch_looper.close()
        return mean_loss

    def user_representation(self, item_ids) -> torch.Tensor:
        """Context after consuming `item_ids` (zeros for an empty history)."""
        item_ids = np.asarray(item_ids, dtype=np.int64).reshape(-1)
        with torch.no_grad():
            if len(item_ids) == 0:
                return self.item_embeddings.weight.new_zeros(
                    self.sequence_model.hidden_dim
                )
            contexts = self.sequence_model(
                self.item_embeddings.lookup(item_ids)
            )
        return contexts[-1]

    def predict(self, user_history, item_ids=None) -> np.ndarray:
        """Score candidate items for a user.

        Args:
            user_history: The user's past item ids, earliest first
            item_ids: Candidate item ids (all items if None)

        Returns:
            One score per candidate, higher is better
        """
        if item_ids is None:
            item_ids = np.arange(self.num_items)
        context = self.user_representation(user_history)
        with torch.no_grad():
            scores = self._score(context, item_ids)
        if not torch.isfinite(scores).all():
            raise NumericalError(
                "Non-finite prediction; model parameters are corrupted"
            )
        return scores.numpy()

    def recommend(
        self,
        user_history,
        k: int = 10,
        exclude_history: bool = True,
    ) -> np.ndarray:
        """Top-k item ids for a user, best first."""
        scores = self.predict(user_history)
        if exclude_history and len(user_history) > 0:
            scores[np.asarray(user_history, dtype=np.int64)] = -np.inf
        order = np.argsort(-scores, kind='stable')
        return order[:min(k, self.num_items)]
