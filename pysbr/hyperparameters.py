"""
Immutable, validated model configuration.
"""

import numbers
from dataclasses import asdict, dataclass, fields, replace as dc_replace
from enum import Enum
from typing import Any, Dict

from .exceptions import ConfigError
from .losses import LossType
from .optimizers import OptimizerType
from .sampling import NegativeSampling
from .sequence_models import LSTMVariant


class ModelType(str, Enum):
    """Sequence model used to build user representations."""

    LSTM = 'lstm'
    EWMA = 'ewma'


_ENUM_FIELDS = {
    'model_type': ModelType,
    'lstm_variant': LSTMVariant,
    'loss': LossType,
    'optimizer': OptimizerType,
    'negative_sampling': NegativeSampling,
}


@dataclass(frozen=True)
class Hyperparameters:
    """
    Configuration of an ImplicitSequenceModel.

    Invalid values raise ConfigError on construction. Enum fields accept
    their string values as well, e.g. ``loss='warp'``.
    """

    num_items: int
    model_type: ModelType = ModelType.LSTM
    embedding_dim: int = 32
    learning_rate: float = 0.1
    l2_penalty: float = 0.0
    lstm_variant: LSTMVariant = LSTMVariant.NORMAL
    ewma_alpha: float = 0.5
    train_alpha: bool = True
    loss: LossType = LossType.WARP
    optimizer: OptimizerType = OptimizerType.ADAGRAD
    num_epochs: int = 10
    num_negative_trials: int = 10
    negative_sampling: NegativeSampling = NegativeSampling.UNIFORM
    num_threads: int = 1
    seed: int = 42

    def __post_init__(self):
        for name, enum_cls in _ENUM_FIELDS.items():
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, enum_cls(value))
            except ValueError:
                options = ', '.join(e.value for e in enum_cls)
                raise ConfigError(
                    f"Invalid {name}: {value!r}. Available options: {options}"
                ) from None

        for name in ('num_items', 'embedding_dim', 'num_epochs',
                     'num_negative_trials', 'num_threads', 'seed'):
            self._coerce(name, numbers.Integral, int)
        for name in ('learning_rate', 'l2_penalty', 'ewma_alpha'):
            self._coerce(name, numbers.Real, float)

        for name in ('num_items', 'embedding_dim', 'num_epochs',
                     'num_negative_trials', 'num_threads'):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigError(
                    f"{name} must be a positive integer, got {value!r}"
                )

        if self.seed < 0:
            raise ConfigError(
                f"seed must be a non-negative integer, got {self.seed!r}"
            )
        if not self.learning_rate > 0:
            raise ConfigError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if not 0 <= self.l2_penalty < 1:
            raise ConfigError(
                f"l2_penalty must be in [0, 1), got {self.l2_penalty}"
            )
        if not 0 < self.ewma_alpha < 1:
            raise ConfigError(
                f"ewma_alpha must be in (0, 1), got {self.ewma_alpha}"
            )
        if not isinstance(self.train_alpha, bool):
            raise ConfigError(
                f"train_alpha must be a bool, got {self.train_alpha!r}"
            )

    def _coerce(self, name, kind, cast):
        """Replace a numeric field by its plain Python value."""
        value = getattr(self, name)
        if isinstance(value, bool) or not isinstance(value, kind):
            expected = "an integer" if cast is int else "a number"
            raise ConfigError(f"{name} must be {expected}, got {value!r}")
        object.__setattr__(self, name, cast(value))

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Hyperparameters':
        """Build from a plain dict, e.g. the `model` section of a YAML file."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigError(f"Unknown hyperparameters: {unknown}")
        try:
            return cls(**config)
        except TypeError as err:
            raise ConfigError(str(err)) from err

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with enum fields as their string values."""
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in asdict(self).items()
        }

    def replace(self, **changes) -> 'Hyperparameters':
        """Return a validated copy with some fields changed."""
        try:
            return dc_replace(self, **changes)
        except TypeError as err:
            raise ConfigError(str(err)) from err

    def build(self, log_level: int = 0):
        """Create a fresh, untrained model from this configuration."""
        # pylint: disable=import-outside-toplevel
        from .model import ImplicitSequenceModel
        return ImplicitSequenceModel(self, log_level=log_level)
