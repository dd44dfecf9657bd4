"""
Unit tests for the LSTM and EWMA sequence models
"""
import pytest
import torch

from pysbr import EWMA, LSTM, ConfigError, LSTMVariant


def _embeddings(length=5, dim=3, seed=0, dtype=torch.float32):
    generator = torch.Generator().manual_seed(seed)
    return torch.rand(length, dim, generator=generator, dtype=dtype) - 0.5


def _lstm(variant=LSTMVariant.NORMAL, dim=3, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return LSTM(dim, variant=variant, generator=generator)


def _numerical_gradient(fn, x, eps=1e-6):
    """Central finite differences of a scalar function."""
    grad = torch.zeros_like(x)
    flat = x.view(-1)
    for i in range(flat.numel()):
        orig = flat[i].item()
        flat[i] = orig + eps
        plus = fn(x).item()
        flat[i] = orig - eps
        minus = fn(x).item()
        flat[i] = orig
        grad.view(-1)[i] = (plus - minus) / (2 * eps)
    return grad


@pytest.mark.parametrize('variant', list(LSTMVariant))
def test_lstm_shapes(variant):
    """One context per step, empty sequences give no contexts"""
    model = _lstm(variant)
    assert model(_embeddings()).shape == (5, 3)
    assert model(torch.zeros(0, 3)).shape == (0, 3)


def test_coupled_variant_drops_the_forget_gate():
    """Coupled gating uses three affine blocks instead of four"""
    assert _lstm(LSTMVariant.NORMAL).weight.shape == (12, 6)
    assert _lstm(LSTMVariant.COUPLED).weight.shape == (9, 6)
    assert _lstm('coupled').variant is LSTMVariant.COUPLED


@pytest.mark.parametrize('variant', list(LSTMVariant))
def test_state_resets_between_sequences(variant):
    """Contexts only depend on the past of the current sequence"""
    model = _lstm(variant)
    embeddings = _embeddings()
    full = model(embeddings)
    model(_embeddings(seed=9))
    prefix = model(embeddings[:2])
    assert torch.allclose(full[:2], prefix)


@pytest.mark.parametrize('variant', list(LSTMVariant))
def test_lstm_backward_matches_finite_differences(variant):
    """Full backpropagation through time in double precision"""
    model = _lstm(variant).double()
    embeddings = _embeddings(dtype=torch.float64)
    d_contexts = _embeddings(seed=3, dtype=torch.float64)

    d_embeddings, d_params = model.backward(embeddings, d_contexts)

    with torch.no_grad():
        numerical = _numerical_gradient(
            lambda e: (model(e) * d_contexts).sum(), embeddings.clone()
        )
        assert torch.allclose(d_embeddings, numerical, atol=1e-6)

        weight = model.weight
        numerical_w = _numerical_gradient(
            lambda w: (model(embeddings) * d_contexts).sum(), weight.data
        )
        assert torch.allclose(d_params['weight'], numerical_w, atol=1e-6)
    assert set(d_params) == {'weight', 'bias'}


def test_lstm_saturated_inputs_stay_finite():
    """Large pre-activations do not overflow"""
    model = _lstm()
    contexts = model(_embeddings() * 1e6)
    assert torch.isfinite(contexts).all()
    assert contexts.abs().max() <= 1.0


def test_ewma_closed_form():
    """context_t = (1 - a) * context_{t-1} + a * embedding_t"""
    model = EWMA(2, alpha=0.5)
    embeddings = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    contexts = model(embeddings)
    assert torch.allclose(contexts[0], torch.tensor([0.5, 0.0]))
    assert torch.allclose(contexts[1], torch.tensor([0.25, 0.5]))
    assert model.alpha.item() == pytest.approx(0.5)


def test_ewma_small_alpha_is_nearly_static():
    """With alpha close to zero the context barely moves between steps"""
    model = EWMA(4, alpha=0.001)
    contexts = model(_embeddings(length=20, dim=4))
    steps = (contexts[1:] - contexts[:-1]).norm(dim=1)
    assert torch.all(steps < 1e-2)


def test_ewma_backward_matches_finite_differences():
    """Gradients reach the embeddings and alpha"""
    model = EWMA(3, alpha=0.3).double()
    embeddings = _embeddings(dtype=torch.float64)
    d_contexts = _embeddings(seed=5, dtype=torch.float64)

    d_embeddings, d_params = model.backward(embeddings, d_contexts)

    with torch.no_grad():
        numerical = _numerical_gradient(
            lambda e: (model(e) * d_contexts).sum(), embeddings.clone()
        )
        assert torch.allclose(d_embeddings, numerical, atol=1e-6)
        numerical_alpha = _numerical_gradient(
            lambda a: (model(embeddings) * d_contexts).sum(),
            model.alpha_logit.data.view(1)
        )
        assert d_params['alpha_logit'].item() == pytest.approx(
            numerical_alpha.item(), abs=1e-6)


def test_ewma_fixed_alpha():
    """A fixed alpha is a buffer and receives no gradient"""
    model = EWMA(3, alpha=0.2, trainable=False)
    assert len(list(model.parameters())) == 0
    d_embeddings, d_params = model.backward(_embeddings(), _embeddings())
    assert d_params == {}
    assert d_embeddings.shape == (5, 3)


@pytest.mark.parametrize('alpha', [0.0, 1.0, -0.5, 2.0])
def test_ewma_invalid_alpha(alpha):
    """alpha must lie strictly between 0 and 1"""
    with pytest.raises(ConfigError):
        EWMA(3, alpha=alpha)


def test_invalid_dimension():
    """Non-positive dimensionality fails at construction"""
    with pytest.raises(ConfigError):
        LSTM(0)
    with pytest.raises(ConfigError):
        EWMA(0)
