#!/usr/bin/env python
"""
Embedding table holding one latent vector per id.
"""

import math
from typing import Optional, Union

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .exceptions import ConfigError, OutOfRange


class EmbeddingTable(nn.Module):
    """Dense table of per-id latent vectors with sparse row gradients."""

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        zero_init: bool = False,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        """Initialize the embedding table.

        Args:
            num_embeddings: Number of ids the table can hold
            embedding_dim: Dimensionality of each vector
            zero_init: Initialize all vectors to zero (used for biases)
            generator: Seeded torch generator for the initial values
        """
        super().__init__()
        if num_embeddings <= 0:
            raise ConfigError(
                f"num_embeddings must be positive, got {num_embeddings}"
            )
        if embedding_dim <= 0:
            raise ConfigError(
                f"embedding_dim must be positive, got {embedding_dim}"
            )

        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim
        self.weight = nn.Parameter(torch.empty(num_embeddings, embedding_dim))
        self._initialize_weights(zero_init, generator)

    def _initialize_weights(
        self,
        zero_init: bool,
        generator: Optional[torch.Generator]
    ) -> None:
        """Draw every component independently from a bounded uniform."""
        with torch.no_grad():
            if zero_init:
                self.weight.zero_()
            else:
                bound = 1.0 / math.sqrt(self.embedding_dim)
                self.weight.uniform_(-bound, bound, generator=generator)

    def extra_repr(self) -> str:
        return f"{self.num_embeddings}, {self.embedding_dim}"

    def _as_ids(self, ids: Union[int, np.ndarray, torch.Tensor]) -> torch.Tensor:
        """Convert ids to a long tensor and check bounds."""
        if torch.is_tensor(ids):
            ids = ids.long()
        else:
            ids = torch.as_tensor(np.asarray(ids, dtype=np.int64))
        if ids.numel() > 0:
            low, high = int(ids.min()), int(ids.max())
            if low < 0 or high >= self.num_embeddings:
                bad = low if low < 0 else high
                raise OutOfRange(
                    f"Id {bad} outside [0, {self.num_embeddings})"
                )
        return ids

    def lookup(self, ids: Union[int, np.ndarray, torch.Tensor]) -> torch.Tensor:
        """Differentiable gather of the rows for `ids`."""
        return F.embedding(self._as_ids(ids), self.weight, sparse=True)

    def forward(self, ids: Union[int, np.ndarray, torch.Tensor]) -> torch.Tensor:
        return self.lookup(ids)

    def vector(self, idx: int) -> torch.Tensor:
        """The stored vector for `idx` (a view on the table, not a copy)."""
        idx = int(self._as_ids(idx))
        return self.weight.data[idx]

    def accumulate_gradient(
        self,
        ids: Union[np.ndarray, torch.Tensor],
        grads: torch.Tensor
    ) -> None:
        """Add row gradients to the pending gradient buffer.

        Gradients for repeated ids are summed. Nothing is applied to the
        table until the optimizer steps.
        """
        ids = self._as_ids(ids).reshape(-1)
        grads = torch.as_tensor(grads, dtype=self.weight.dtype)
        grads = grads.reshape(len(ids), self.embedding_dim)

        update = torch.sparse_coo_tensor(
            ids.unsqueeze(0), grads, self.weight.shape
        )
        if self.weight.grad is None:
            self.weight.grad = update
        else:
            self.weight.grad = self.weight.grad + update

    def pending_gradient(self) -> Optional[torch.Tensor]:
        """Accumulated gradient with repeated rows summed (None if empty)."""
        grad = self.weight.grad
        if grad is not None and grad.is_sparse:
            grad = grad.coalesce()
        return grad

    def zero_grad(self, set_to_none: bool = True) -> None:
        """Clear the pending gradient buffer."""
        self.weight.grad = None
