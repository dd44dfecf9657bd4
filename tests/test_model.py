"""
Unit tests for fitting and scoring ImplicitSequenceModel
"""
import math

import numpy as np
import pytest
import torch

from pysbr import (
    DataError, FitError, Hyperparameters, Interactions, NumericalError,
    OutOfRange,
)
from conftest import make_cyclic_interactions


def _hyperparameters(**changes):
    config = dict(num_items=10, embedding_dim=8, num_epochs=2, seed=7)
    config.update(changes)
    return Hyperparameters(**config)


def _state(model):
    return {k: v.detach().clone() for k, v in model.state_dict().items()}


@pytest.mark.parametrize('changes', [
    dict(),
    dict(model_type='ewma'),
    dict(model_type='ewma', train_alpha=False),
    dict(lstm_variant='coupled'),
    dict(loss='bpr'),
    dict(loss='hinge'),
    dict(optimizer='adam', learning_rate=0.01),
    dict(negative_sampling='popularity'),
    dict(l2_penalty=0.001),
])
def test_fit_returns_finite_loss(changes, cyclic_interactions):
    """Every configuration trains and reports a finite mean loss"""
    model = _hyperparameters(**changes).build()
    before = _state(model)
    loss = model.fit(cyclic_interactions)
    assert math.isfinite(loss)
    assert loss >= 0
    after = _state(model)
    assert not torch.equal(before['item_embeddings.weight'],
                           after['item_embeddings.weight'])


def test_fit_accepts_compressed(cyclic_interactions):
    """Compressed views can be fitted directly"""
    model = _hyperparameters().build()
    assert math.isfinite(model.fit(cyclic_interactions.to_compressed()))


def test_training_is_reproducible(cyclic_interactions):
    """Equal seeds give equal losses and predictions"""
    model1 = _hyperparameters().build()
    model2 = _hyperparameters().build()
    assert model1.fit(cyclic_interactions) == model2.fit(cyclic_interactions)
    assert np.array_equal(model1.predict([0, 1, 2]),
                          model2.predict([0, 1, 2]))


def test_threaded_training_is_reproducible(cyclic_interactions):
    """Worker threads reduce gradients in a fixed order"""
    hp = _hyperparameters(num_threads=3)
    model1, model2 = hp.build(), hp.build()
    loss1 = model1.fit(cyclic_interactions)
    loss2 = model2.fit(cyclic_interactions)
    assert math.isfinite(loss1)
    assert loss1 == loss2
    assert np.array_equal(model1.predict([4, 5]), model2.predict([4, 5]))


def test_training_reduces_loss():
    """Loss on a perfectly regular sequence goes down with training"""
    data = make_cyclic_interactions(num_users=20, num_items=20, length=8)
    model = _hyperparameters(num_items=20, num_epochs=1, seed=3).build()
    first = model.fit(data)
    for _ in range(15):
        last = model.fit(data)
    assert last < first


def test_fit_rejects_bad_data():
    """Empty or incompatible data raises DataError"""
    model = _hyperparameters().build()
    with pytest.raises(DataError):
        model.fit(Interactions([], [], num_users=2, num_items=10))
    with pytest.raises(DataError):
        model.fit(Interactions([0, 0], [1, 2], num_items=11))
    # nobody has a next item to predict
    with pytest.raises(FitError):
        model.fit(Interactions([0, 1, 2], [1, 2, 3], num_items=10))
    with pytest.raises(TypeError):
        model.fit([(0, 1), (0, 2)])


def test_budget_one_with_everything_seen_gives_zero_loss():
    """No valid negative can be found, so the loss is zero"""
    data = Interactions([0, 0, 0], [0, 1, 2], num_items=3)
    model = Hyperparameters(num_items=3, embedding_dim=4, num_epochs=2,
                            num_negative_trials=1).build()
    assert model.fit(data) == 0.0


def test_non_finite_values_abort_fitting(cyclic_interactions):
    """Corrupted parameters raise NumericalError instead of training on"""
    model = _hyperparameters(loss='bpr').build()
    with torch.no_grad():
        model.item_embeddings.weight.fill_(float('nan'))
    with pytest.raises(NumericalError):
        model.fit(cyclic_interactions)


def test_should_stop_aborts_early(cyclic_interactions):
    """The abort check is honoured between users"""
    model = _hyperparameters(num_epochs=50).build()
    before = _state(model)
    assert model.fit(cyclic_interactions, should_stop=lambda: True) == 0.0
    assert torch.equal(before['item_embeddings.weight'],
                       model.item_embeddings.weight.detach())

    calls = []

    def stop_after_three():
        calls.append(1)
        return len(calls) > 3

    loss = model.fit(cyclic_interactions, should_stop=stop_after_three)
    assert len(calls) == 4
    assert math.isfinite(loss) and loss >= 0


def test_predict_is_a_pure_read(cyclic_interactions):
    """Scoring does not change any state"""
    model = _hyperparameters().build()
    model.fit(cyclic_interactions)
    before = _state(model)
    scores1 = model.predict([1, 2, 3])
    scores2 = model.predict([1, 2, 3])
    after = _state(model)
    assert np.array_equal(scores1, scores2)
    assert all(torch.equal(before[k], after[k]) for k in before)
    assert model.item_embeddings.weight.grad is None


def test_predict_shapes(cyclic_interactions):
    """Scores for all items or a candidate subset"""
    model = _hyperparameters().build()
    model.fit(cyclic_interactions)
    all_scores = model.predict([0, 1])
    assert all_scores.shape == (10,)
    subset = model.predict([0, 1], item_ids=[7, 2])
    assert np.allclose(subset, all_scores[[7, 2]])
    # cold start user only gets the item biases
    assert np.allclose(model.predict([]),
                       model.item_biases.weight.detach().numpy()[:, 0])
    with pytest.raises(OutOfRange):
        model.predict([0, 1], item_ids=[10])
    with pytest.raises(OutOfRange):
        model.predict([12])


def test_user_representation(cyclic_interactions):
    """Representation is the last context of the history"""
    model = _hyperparameters(model_type='ewma').build()
    assert torch.count_nonzero(model.user_representation([])) == 0
    history = [3, 4, 5]
    embeddings = model.item_embeddings.weight.detach()[history]
    expected = model.sequence_model(embeddings)[-1]
    assert torch.allclose(model.user_representation(history), expected)


def test_recommend(cyclic_interactions):
    """Top-k recommendations skip the history by default"""
    model = _hyperparameters().build()
    model.fit(cyclic_interactions)
    history = [0, 1, 2]
    recs = model.recommend(history, k=4)
    assert len(recs) == 4
    assert not set(recs.tolist()) & set(history)
    scores = model.predict(history)
    assert np.all(np.diff(scores[recs]) <= 0)
    assert len(model.recommend(history, k=50, exclude_history=False)) == 10
