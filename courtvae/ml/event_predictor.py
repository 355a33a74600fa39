"""Transition-probability network: two team latents plus context to event probabilities."""

import copy
import logging
from typing import Dict, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn

from ..config import EventPredictorConfig
from ..data.features import EVENT_DIM, EVENT_LABELS
from ..errors import ConfigurationError, DataError, PersistenceError, sanitize
from ..models.game import CONTEXT_DIM

logger = logging.getLogger(__name__)

PROBABILITY_TOLERANCE = 1e-6
_EPS = 1e-8


def cross_entropy(predicted: torch.Tensor, actual: torch.Tensor) -> torch.Tensor:
    """Cross-entropy of a target distribution under predicted probabilities."""
    return -(actual * torch.log(predicted.clamp_min(_EPS))).sum(dim=-1).mean()


def validate_probabilities(probs: Sequence[float], tolerance: float = PROBABILITY_TOLERANCE) -> bool:
    arr = np.asarray(probs, dtype=np.float64)
    return bool(
        arr.shape == (EVENT_DIM,)
        and np.all(np.isfinite(arr))
        and np.all(arr >= 0)
        and abs(arr.sum() - 1.0) <= tolerance
    )


class TransitionNetwork(nn.Module):
    """MLP with a softmax output over the eight event outcomes."""

    def __init__(self, input_dim: int = 74, hidden_dims: Sequence[int] = (128, 64, 32),
                 output_dim: int = EVENT_DIM, dropout: float = 0.1):
        super().__init__()
        layers = []
        prev = input_dim
        for width in hidden_dims:
            layers += [nn.Linear(prev, width), nn.ReLU(), nn.Dropout(dropout)]
            prev = width
        layers.append(nn.Linear(prev, output_dim))
        self.net = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.softmax(self.net(x), dim=-1)


class EventPredictor:
    """
    Predicts a team's event distribution from its own latent ("self") and its
    opponent's latent, each given as mean and standard deviation.

    Input layout (74 dims): self mu (16), self sigma (16), opponent mu (16),
    opponent sigma (16), game context (10).
    """

    model_name = "event_predictor"

    def __init__(self, config: Optional[EventPredictorConfig] = None, latent_dim: int = 16,
                 seed: Optional[int] = None):
        self.config = config or EventPredictorConfig()
        self.latent_dim = latent_dim
        expected = 4 * latent_dim + CONTEXT_DIM
        if self.config.input_dim != expected:
            raise ConfigurationError(
                f"input_dim {self.config.input_dim} does not match 4*{latent_dim}+{CONTEXT_DIM}",
                component=self.model_name,
            )
        if seed is not None:
            torch.manual_seed(seed)
        self.model = TransitionNetwork(
            input_dim=self.config.input_dim,
            hidden_dims=self.config.hidden_dims,
            output_dim=self.config.output_dim,
            dropout=self.config.dropout,
        )
        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=self.config.learning_rate)
        self.training_step = 0

    def build_input(self, self_mu, self_sigma, opp_mu, opp_sigma, context) -> torch.Tensor:
        """
        Concatenate the predictor input, accepting numpy arrays or tensors.

        Tensors keep their autograd graph so the encoder can receive feedback.

        Raises:
            DataError: If any part has the wrong length
        """
        parts = []
        for name, value, size in (
            ("self_mu", self_mu, self.latent_dim),
            ("self_sigma", self_sigma, self.latent_dim),
            ("opp_mu", opp_mu, self.latent_dim),
            ("opp_sigma", opp_sigma, self.latent_dim),
            ("context", context, CONTEXT_DIM),
        ):
            if isinstance(value, torch.Tensor):
                tensor = value.float().reshape(1, -1)
            else:
                tensor = torch.as_tensor(np.asarray(value, dtype=np.float32)).reshape(1, -1)
            if tensor.shape[1] != size:
                raise DataError(f"{name} must have {size} values, got {tensor.shape[1]}",
                                component=self.model_name)
            parts.append(tensor)
        return torch.cat(parts, dim=1)

    def forward(self, self_mu, self_sigma, opp_mu, opp_sigma, context) -> torch.Tensor:
        """Differentiable prediction in training mode."""
        self.model.train()
        return self.model(self.build_input(self_mu, self_sigma, opp_mu, opp_sigma, context))

    def predict(self, self_mu, self_sigma, opp_mu, opp_sigma, context) -> np.ndarray:
        """Return the 8 event probabilities (non-negative, summing to 1)."""
        x = self.build_input(self_mu, self_sigma, opp_mu, opp_sigma, context)
        self.model.eval()
        with torch.no_grad():
            probs = self.model(x)[0].double().numpy()
        # Renormalize in float64 so the sum holds to 1e-6 after the float32 softmax.
        probs = np.clip(probs, 0.0, None)
        return probs / probs.sum()

    def predict_labeled(self, *args) -> Dict[str, float]:
        return dict(zip(EVENT_LABELS, (float(p) for p in self.predict(*args))))

    def loss(self, predicted, actual) -> float:
        """Cross-entropy between predicted and actual event distributions."""
        pred_t = torch.as_tensor(np.asarray(predicted, dtype=np.float64))
        act_t = torch.as_tensor(np.asarray(actual, dtype=np.float64))
        if pred_t.shape[-1] != EVENT_DIM or act_t.shape[-1] != EVENT_DIM:
            raise DataError(f"distributions must have {EVENT_DIM} values", component=self.model_name)
        return sanitize(cross_entropy(pred_t, act_t), component="event_predictor_loss")

    def train_step(self, self_mu, self_sigma, opp_mu, opp_sigma, context, actual) -> float:
        """One Adam update toward the observed distribution. Inputs are detached."""
        inputs = [
            v.detach() if isinstance(v, torch.Tensor) else v
            for v in (self_mu, self_sigma, opp_mu, opp_sigma, context)
        ]
        target = torch.as_tensor(np.asarray(actual, dtype=np.float32)).reshape(1, -1)
        self.optimizer.zero_grad()
        predicted = self.forward(*inputs)
        loss = cross_entropy(predicted, target)
        value = sanitize(loss, component="event_predictor_loss")
        loss.backward()
        torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=self.config.grad_clip)
        self.optimizer.step()
        self.training_step += 1
        return value

    def get_weights(self) -> Dict:
        return {
            "model": self.model_name,
            "state": {k: v.detach().cpu().tolist() for k, v in self.model.state_dict().items()},
            "training_step": self.training_step,
            "config": self.config.to_dict(),
        }

    def set_weights(self, weights: Dict) -> None:
        try:
            self.model.load_state_dict(
                {k: torch.tensor(v, dtype=torch.float32) for k, v in weights.get("state", {}).items()}
            )
        except (RuntimeError, TypeError, ValueError) as exc:
            raise PersistenceError(f"incompatible weights: {exc}", component=self.model_name) from exc
        self.training_step = int(weights.get("training_step", 0))
        logger.info("Loaded %s weights at step %d", self.model_name, self.training_step)

    def snapshot(self) -> Dict:
        return {
            "model": copy.deepcopy(self.model.state_dict()),
            "optimizer": copy.deepcopy(self.optimizer.state_dict()),
            "training_step": self.training_step,
        }

    def restore(self, snapshot: Dict) -> None:
        self.model.load_state_dict(snapshot["model"])
        self.optimizer.load_state_dict(snapshot["optimizer"])
        self.training_step = snapshot["training_step"]
