"""
Adaptive optimizers with row-sparse updates for embedding tables.

Sparse gradients (from `F.embedding(..., sparse=True)` or
`EmbeddingTable.accumulate_gradient`) only touch the rows they carry:
untouched rows keep their values, accumulator state and are not decayed.
Weight decay is applied multiplicatively to the parameter and never enters
the gradient accumulators.
"""

from enum import Enum
from typing import Iterable, Tuple

import torch
from torch.optim import Optimizer

from .exceptions import ConfigError


class OptimizerType(str, Enum):
    """Supported optimizers."""

    ADAGRAD = 'adagrad'
    ADAM = 'adam'


def _check_common(lr: float, l2_penalty: float, eps: float) -> None:
    if lr <= 0.0:
        raise ConfigError(f"Invalid learning rate: {lr}")
    if not 0.0 <= l2_penalty < 1.0:
        raise ConfigError(f"Invalid l2_penalty: {l2_penalty}")
    if eps <= 0.0:
        raise ConfigError(f"Invalid epsilon value: {eps}")


def _rows(grad: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Row indices and values of a sparse gradient, repeated rows summed."""
    grad = grad.coalesce()
    return grad.indices()[0], grad.values()


class Adagrad(Optimizer):
    """
    Adagrad with multiplicative weight decay.

    For every parameter element with gradient g:
        sum <- sum + g^2
        p   <- p - lr / sqrt(sum + eps) * g - l2_penalty * p
    """

    def __init__(
        self,
        params: Iterable,
        lr: float = 0.1,
        l2_penalty: float = 0.0,
        eps: float = 1e-10,
    ) -> None:
        _check_common(lr, l2_penalty, eps)
        defaults = dict(lr=lr, l2_penalty=l2_penalty, eps=eps)
        super().__init__(params, defaults)

        for group in self.param_groups:
            for p in group['params']:
                self.state[p]['sum'] = torch.zeros_like(
                    p, memory_format=torch.preserve_format
                )

    @torch.no_grad()
    def step(self, closure=None):
        """Perform a single optimization step."""
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        for group in self.param_groups:
            lr = group['lr']
            decay = 1.0 - group['l2_penalty']
            eps = group['eps']

            for p in group['params']:
                if p.grad is None:
                    continue
                state_sum = self.state[p]['sum']

                if p.grad.is_sparse:
                    rows, values = _rows(p.grad)
                    if rows.numel() == 0:
                        continue
                    row_sum = state_sum[rows] + values.pow(2)
                    state_sum[rows] = row_sum
                    p[rows] = (
                        p[rows] * decay
                        - lr * values / (row_sum + eps).sqrt()
                    )
                else:
                    grad = p.grad
                    state_sum.addcmul_(grad, grad, value=1.0)
                    p.mul_(decay).addcdiv_(
                        grad, (state_sum + eps).sqrt(), value=-lr
                    )

        return loss


class Adam(Optimizer):
    """
    Lazy Adam: moment estimates of sparse parameters are only updated for
    the rows present in the gradient.
    """

    def __init__(
        self,
        params: Iterable,
        lr: float = 0.01,
        l2_penalty: float = 0.0,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
    ) -> None:
        _check_common(lr, l2_penalty, eps)
        if not (0.0 <= betas[0] < 1.0 and 0.0 <= betas[1] < 1.0):
            raise ConfigError(f"Invalid beta parameters: {betas}")
        defaults = dict(lr=lr, l2_penalty=l2_penalty, betas=betas, eps=eps)
        super().__init__(params, defaults)

    @torch.no_grad()
    def step(self, closure=None):
        """Perform a single optimization step."""
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        for group in self.param_groups:
            lr = group['lr']
            decay = 1.0 - group['l2_penalty']
            beta1, beta2 = group['betas']
            eps = group['eps']

            for p in group['params']:
                if p.grad is None:
                    continue
                state = self.state[p]
                if len(state) == 0:
                    state['step'] = 0
                    state['exp_avg'] = torch.zeros_like(p)
                    state['exp_avg_sq'] = torch.zeros_like(p)
                state['step'] += 1
                bias1 = 1.0 - beta1 ** state['step']
                bias2 = 1.0 - beta2 ** state['step']
                step_size = lr / bias1

                if p.grad.is_sparse:
                    rows, values = _rows(p.grad)
                    if rows.numel() == 0:
                        continue
                    exp_avg = state['exp_avg'][rows] * beta1 \
                        + (1.0 - beta1) * values
                    exp_avg_sq = state['exp_avg_sq'][rows] * beta2 \
                        + (1.0 - beta2) * values.pow(2)
                    state['exp_avg'][rows] = exp_avg
                    state['exp_avg_sq'][rows] = exp_avg_sq
                    denom = (exp_avg_sq / bias2).sqrt() + eps
                    p[rows] = p[rows] * decay - step_size * exp_avg / denom
                else:
                    grad = p.grad
                    exp_avg = state['exp_avg']
                    exp_avg_sq = state['exp_avg_sq']
                    exp_avg.mul_(beta1).add_(grad, alpha=1.0 - beta1)
                    exp_avg_sq.mul_(beta2).addcmul_(
                        grad, grad, value=1.0 - beta2
                    )
                    denom = (exp_avg_sq / bias2).sqrt().add_(eps)
                    p.mul_(decay).addcdiv_(exp_avg, denom, value=-step_size)

        return loss


def build_optimizer(
    kind: OptimizerType,
    params: Iterable,
    learning_rate: float,
    l2_penalty: float = 0.0,
) -> Optimizer:
    """Build an optimizer from its type (or string value)."""
    kind = OptimizerType(kind)
    if kind is OptimizerType.ADAGRAD:
        return Adagrad(params, lr=learning_rate, l2_penalty=l2_penalty)
    return Adam(params, lr=learning_rate, l2_penalty=l2_penalty)
