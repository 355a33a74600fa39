"""Tests for the transition-probability predictor."""

import numpy as np
import pytest
import torch

from courtvae.config import EventPredictorConfig
from courtvae.data.features import EVENT_DIM, EVENT_LABELS
from courtvae.errors import ConfigurationError, DataError
from courtvae.ml.event_predictor import EventPredictor, cross_entropy, validate_probabilities
from courtvae.models.game import CONTEXT_DIM

LATENT = 16


@pytest.fixture
def predictor():
    return EventPredictor(seed=11)


@pytest.fixture
def inputs():
    rng = np.random.default_rng(5)
    return (
        rng.normal(size=LATENT),
        rng.uniform(0.2, 1.0, LATENT),
        rng.normal(size=LATENT),
        rng.uniform(0.2, 1.0, LATENT),
        np.zeros(CONTEXT_DIM),
    )


def test_predict_is_a_distribution(predictor, inputs):
    probs = predictor.predict(*inputs)
    assert probs.shape == (EVENT_DIM,)
    assert np.all(probs >= 0)
    assert abs(probs.sum() - 1.0) <= 1e-6
    assert validate_probabilities(probs)


def test_predict_is_deterministic(predictor, inputs):
    assert np.allclose(predictor.predict(*inputs), predictor.predict(*inputs))


def test_predict_labeled(predictor, inputs):
    labeled = predictor.predict_labeled(*inputs)
    assert list(labeled) == EVENT_LABELS


def test_dimension_mismatch(predictor, inputs):
    self_mu, self_sigma, opp_mu, opp_sigma, context = inputs
    with pytest.raises(DataError):
        predictor.predict(self_mu[:8], self_sigma, opp_mu, opp_sigma, context)
    with pytest.raises(DataError):
        predictor.predict(self_mu, self_sigma, opp_mu, opp_sigma, np.zeros(CONTEXT_DIM + 1))


def test_input_dim_must_match_latent():
    with pytest.raises(ConfigurationError):
        EventPredictor(EventPredictorConfig(input_dim=70), latent_dim=16)
    EventPredictor(EventPredictorConfig(input_dim=4 * 8 + CONTEXT_DIM), latent_dim=8)


def test_validate_probabilities():
    assert validate_probabilities(np.full(EVENT_DIM, 1.0 / EVENT_DIM))
    assert not validate_probabilities(np.full(EVENT_DIM, 0.2))
    assert not validate_probabilities(np.zeros(EVENT_DIM))
    assert not validate_probabilities(np.full(EVENT_DIM - 1, 1.0 / (EVENT_DIM - 1)))


def test_cross_entropy():
    uniform = torch.full((1, EVENT_DIM), 1.0 / EVENT_DIM)
    assert cross_entropy(uniform, uniform).item() == pytest.approx(np.log(EVENT_DIM), rel=1e-5)
    one_hot = torch.zeros(1, EVENT_DIM)
    one_hot[0, 0] = 1.0
    assert cross_entropy(one_hot, one_hot).item() == pytest.approx(0.0, abs=1e-6)


def test_loss_is_sanitized(predictor):
    actual = np.full(EVENT_DIM, 1.0 / EVENT_DIM)
    assert predictor.loss(actual, actual) == pytest.approx(np.log(EVENT_DIM))
    with pytest.raises(DataError):
        predictor.loss(np.ones(3), actual)


def test_training_reduces_loss(predictor, inputs):
    actual = np.array([0.4, 0.1, 0.05, 0.05, 0.1, 0.05, 0.05, 0.2])
    first = predictor.loss(predictor.predict(*inputs), actual)
    for _ in range(50):
        predictor.train_step(*inputs, actual)
    assert predictor.training_step == 50
    assert predictor.loss(predictor.predict(*inputs), actual) < first


def test_train_step_does_not_touch_input_graph(predictor, inputs):
    self_mu = torch.tensor(inputs[0], dtype=torch.float32, requires_grad=True)
    predictor.train_step(self_mu, *inputs[1:], np.full(EVENT_DIM, 1.0 / EVENT_DIM))
    assert self_mu.grad is None


def test_weights_and_snapshot(predictor, inputs):
    snapshot = predictor.snapshot()
    before = predictor.predict(*inputs)
    weights = predictor.get_weights()
    predictor.train_step(*inputs, np.full(EVENT_DIM, 1.0 / EVENT_DIM))

    clone = EventPredictor(seed=1)
    clone.set_weights(weights)
    assert np.allclose(clone.predict(*inputs), before, atol=1e-6)

    predictor.restore(snapshot)
    assert predictor.training_step == 0
    assert np.allclose(predictor.predict(*inputs), before)
