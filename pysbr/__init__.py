"""Public API exports for pysbr package."""

# Errors
from .exceptions import (
    SbrError, ConfigError, FitError, DataError, NumericalError, OutOfRange
)

# Core data structures
from .interactions import Interactions, CompressedInteractions, UserSequence
from .splitting import (
    train_test_split, user_based_split, sequence_based_split
)

# Model building blocks
from .embeddings import EmbeddingTable
from .sequence_models import LSTMVariant, SequenceModel, LSTM, EWMA
from .sampling import NegativeSampling, NegativeSampler
from .losses import LossType, bpr_loss, hinge_loss, warp_loss
from .optimizers import OptimizerType, Adagrad, Adam, build_optimizer

# Models
from .hyperparameters import ModelType, Hyperparameters
from .model import ImplicitSequenceModel

# Evaluation
from .evaluation import mrr_score

# Utilities
from .utils import get_logger, get_sparse_matrix_stats

# Pipeline
from .pipeline import TrainingPipeline
