#!/usr/bin/env python
"""
Sequence models turning a sequence of item embeddings into one context
vector per step.

Both models share the same small capability set:
    initial_state()                 -> zero state for a new user
    step(embedding, state)          -> (context, next_state)
    forward(embeddings)             -> contexts for the whole sequence
    backward(embeddings, d_context) -> (d_embeddings, d_params)

The context emitted after consuming item t is used to score item t+1.
"""

import math
from enum import Enum
from typing import Dict, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .exceptions import ConfigError


class LSTMVariant(str, Enum):
    """Gating used by the LSTM cell."""

    NORMAL = 'normal'
    COUPLED = 'coupled'  # forget gate tied to 1 - input gate


class SequenceModel(nn.Module):
    """Base class for models producing a context vector per step."""

    def __init__(self, embedding_dim: int) -> None:
        super().__init__()
        if embedding_dim <= 0:
            raise ConfigError(
                f"embedding_dim must be positive, got {embedding_dim}"
            )
        self.embedding_dim = embedding_dim
        self.hidden_dim = embedding_dim

    def initial_state(self, batch_shape: Tuple[int, ...] = ()):
        """State at the start of a user's sequence."""
        raise NotImplementedError

    def step(self, embedding: torch.Tensor, state):
        """Consume one embedding, return (context, next_state)."""
        raise NotImplementedError

    def forward(self, embeddings: torch.Tensor) -> torch.Tensor:
        """Run the model over a sequence.

        Args:
            embeddings: Item embeddings of shape (seq_len, embedding_dim)

        Returns:
            Contexts of shape (seq_len, hidden_dim)
        """
        state = self.initial_state()
        contexts = []
        for embedding in embeddings:
            context, state = self.step(embedding, state)
            contexts.append(context)

        if not contexts:
            return embeddings.new_zeros((0, self.hidden_dim))
        return torch.stack(contexts)

    def backward(
        self,
        embeddings: torch.Tensor,
        d_contexts: torch.Tensor
    ) -> Tuple[torch.Tensor, Dict[str, torch.Tensor]]:
        """Backpropagate an upstream gradient through the whole sequence.

        Args:
            embeddings: Item embeddings of shape (seq_len, embedding_dim)
            d_contexts: Gradient w.r.t. each context, (seq_len, hidden_dim)

        Returns:
            Tuple of (gradient w.r.t. embeddings, gradients w.r.t. the
            trainable parameters keyed by parameter name)
        """
        named = [
            (name, param) for name, param in self.named_parameters()
            if param.requires_grad
        ]
        inputs = embeddings.detach().requires_grad_(True)

        with torch.enable_grad():
            contexts = self(inputs)
            grads = torch.autograd.grad(
                contexts,
                [inputs] + [param for _, param in named],
                grad_outputs=d_contexts,
                allow_unused=True,
            )

        d_embeddings = grads[0]
        if d_embeddings is None:
            d_embeddings = torch.zeros_like(inputs)
        d_params = {
            name: grad if grad is not None else torch.zeros_like(param)
            for (name, param), grad in zip(named, grads[1:])
        }
        return d_embeddings, d_params


class LSTM(SequenceModel):
    """Single layer LSTM whose hidden state is the context vector."""

    def __init__(
        self,
        embedding_dim: int,
        variant: LSTMVariant = LSTMVariant.NORMAL,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        """Initialize LSTM cell.

        Args:
            embedding_dim: Input and hidden dimensionality
            variant: NORMAL (4 gates) or COUPLED (forget = 1 - input)
            generator: Seeded torch generator for weight initialization
        """
        super().__init__(embedding_dim)
        self.variant = LSTMVariant(variant)
        self.num_blocks = 4 if self.variant is LSTMVariant.NORMAL else 3

        # affine map of [embedding; h] to all gate pre-activations
        self.weight = nn.Parameter(torch.empty(
            self.num_blocks * self.hidden_dim,
            self.embedding_dim + self.hidden_dim,
        ))
        self.bias = nn.Parameter(torch.zeros(self.num_blocks * self.hidden_dim))
        self._initialize_weights(generator)

    def _initialize_weights(self, generator: Optional[torch.Generator]) -> None:
        """Uniform weights, forget gate biased towards remembering."""
        bound = 1.0 / math.sqrt(self.hidden_dim)
        with torch.no_grad():
            self.weight.uniform_(-bound, bound, generator=generator)
            self.bias.zero_()
            if self.variant is LSTMVariant.NORMAL:
                self.bias[self.hidden_dim:2 * self.hidden_dim] = 1.0

    def extra_repr(self) -> str:
        return f"{self.embedding_dim}, variant={self.variant.value}"

    def initial_state(
        self,
        batch_shape: Tuple[int, ...] = ()
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        zeros = self.weight.new_zeros(*batch_shape, self.hidden_dim)
        return zeros, zeros.clone()

    def step(
        self,
        embedding: torch.Tensor,
        state: Tuple[torch.Tensor, torch.Tensor]
    ) -> Tuple[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        h_prev, c_prev = state
        gates = F.linear(
            torch.cat([embedding, h_prev], dim=-1), self.weight, self.bias
        )

        if self.variant is LSTMVariant.NORMAL:
            i, f, o, g = gates.chunk(4, dim=-1)
            i = torch.sigmoid(i)
            f = torch.sigmoid(f)
        else:
            i, o, g = gates.chunk(3, dim=-1)
            i = torch.sigmoid(i)
            f = 1.0 - i
        o = torch.sigmoid(o)
        g = torch.tanh(g)

        c = f * c_prev + i * g
        h = o * torch.tanh(c)
        return h, (h, c)


class EWMA(SequenceModel):
    """Exponentially weighted moving average of the item embeddings."""

    def __init__(
        self,
        embedding_dim: int,
        alpha: float = 0.5,
        trainable: bool = True,
    ) -> None:
        """Initialize EWMA.

        Args:
            embedding_dim: Dimensionality of embeddings and contexts
            alpha: Initial weight of the newest embedding, in (0, 1)
            trainable: Learn alpha jointly with the embeddings
        """
        super().__init__(embedding_dim)
        if not 0.0 < alpha < 1.0:
            raise ConfigError(f"alpha must be in (0, 1), got {alpha}")

        # alpha = sigmoid(alpha_logit) keeps it inside (0, 1) during training
        logit = torch.tensor(math.log(alpha / (1.0 - alpha)))
        if trainable:
            self.alpha_logit = nn.Parameter(logit)
        else:
            self.register_buffer('alpha_logit', logit)
        self.trainable = trainable

    @property
    def alpha(self) -> torch.Tensor:
        """Current smoothing factor."""
        return torch.sigmoid(self.alpha_logit)

    def extra_repr(self) -> str:
        return (
            f"{self.embedding_dim}, alpha={float(self.alpha):.4f}, "
            f"trainable={self.trainable}"
        )

    def initial_state(self, batch_shape: Tuple[int, ...] = ()) -> torch.Tensor:
        return self.alpha_logit.new_zeros(*batch_shape, self.hidden_dim)

    def step(
        self,
        embedding: torch.Tensor,
        state: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        alpha = self.alpha
        context = (1.0 - alpha) * state + alpha * embedding
        return context, context
