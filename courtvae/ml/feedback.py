"""
Coupled training of the latent encoder and the event predictor.

The predictor's cross-entropy is fed back into the encoder only when it
exceeds ``feedback_threshold``, scaled by a coefficient alpha that decays
geometrically each time feedback fires and never drops below ``min_alpha``.
"""

import logging
from collections import deque
from typing import Dict, Optional

import numpy as np
import torch

from ..config import FeedbackConfig
from ..errors import sanitize
from ..models.posterior import LatentDistribution
from .event_predictor import EventPredictor, cross_entropy
from .latent_encoder import LatentEncoder

logger = logging.getLogger(__name__)


class RepresentationFeedbackCoordinator:
    """Gates and scales predictor-to-encoder feedback."""

    def __init__(self, encoder: LatentEncoder, config: Optional[FeedbackConfig] = None):
        self.encoder = encoder
        self.config = config or FeedbackConfig()
        self.step = 0
        self.current_alpha = self.config.initial_alpha
        # (fired, alpha before the call) per apply()
        self._recent = deque(maxlen=self.config.stability_window)

    def should_feedback(self, nn_loss: float) -> bool:
        return nn_loss > self.config.feedback_threshold

    def apply(self, nn_loss, game_id: Optional[str] = None) -> float:
        """
        Apply feedback for one predictor loss.

        Args:
            nn_loss: Predictor loss; a tensor still attached to the encoder
                graph is backpropagated, a plain float only updates the schedule
            game_id: Game being trained, for error context

        Returns:
            The alpha used, or 0.0 when feedback did not fire

        Raises:
            NumericInstabilityError: If the loss is not finite. State is unchanged.
        """
        value = sanitize(nn_loss, component="feedback", game_id=game_id)
        alpha = self.current_alpha
        fired = self.should_feedback(value)
        self._recent.append((fired, alpha))
        if not fired:
            return 0.0

        if isinstance(nn_loss, torch.Tensor) and nn_loss.requires_grad:
            self.encoder.apply_feedback(alpha * nn_loss)
        self.current_alpha = max(self.config.min_alpha, alpha * self.config.alpha_decay_rate)
        self.step += 1
        logger.debug("Feedback fired: loss=%.4f alpha=%.5f -> %.5f", value, alpha, self.current_alpha)
        return alpha

    def monitor_stability(self) -> Dict:
        """Feedback rate and alpha decay over the trailing window."""
        if not self._recent:
            return {
                "feedback_rate": 0.0,
                "alpha_decay_observed": 0.0,
                "current_alpha": self.current_alpha,
                "step": self.step,
                "stable": True,
            }
        feedback_rate = sum(1 for fired, _ in self._recent if fired) / len(self._recent)
        window_start_alpha = self._recent[0][1]
        decay = (window_start_alpha - self.current_alpha) / window_start_alpha
        return {
            "feedback_rate": feedback_rate,
            "alpha_decay_observed": decay,
            "current_alpha": self.current_alpha,
            "step": self.step,
            "stable": feedback_rate < 0.5 and decay >= 0,
        }

    def reset(self) -> None:
        self.step = 0
        self.current_alpha = self.config.initial_alpha
        self._recent.clear()

    def to_dict(self) -> Dict:
        return {"step": self.step, "current_alpha": self.current_alpha}

    def load_dict(self, data: Dict) -> None:
        alpha = float(data.get("current_alpha", self.config.initial_alpha))
        self.current_alpha = min(self.config.initial_alpha, max(self.config.min_alpha, alpha))
        self.step = int(data.get("step", 0))


class FeedbackTrainer:
    """Runs the per-team training step and keeps loss history."""

    def __init__(
        self,
        encoder: LatentEncoder,
        predictor: EventPredictor,
        config: Optional[FeedbackConfig] = None,
    ):
        self.encoder = encoder
        self.predictor = predictor
        self.config = config or FeedbackConfig()
        self.coordinator = RepresentationFeedbackCoordinator(encoder, self.config)
        self.nn_losses = deque(maxlen=self.config.max_history)
        self.vae_losses = deque(maxlen=self.config.max_history)
        self.total_iterations = 0
        self.feedback_triggers = 0
        self.skipped_vae_updates = 0
        self.convergence_achieved = False

    def train_on_game(
        self,
        features,
        actual,
        opponent: LatentDistribution,
        context,
        event_probs=None,
        game_id: Optional[str] = None,
    ) -> Dict:
        """
        Train on one team's side of a game.

        Order: encode with gradients, predict against the opponent's latent,
        apply gated feedback to the encoder, update the predictor, then take
        the regular encoder step.

        Args:
            features: Team's 88-dim feature vector
            actual: Team's observed 8-dim event distribution
            opponent: Opponent latent for this game (treated as constant)
            context: 10-dim game context vector
            event_probs: Event distribution for the contrastive term, if enabled
            game_id: Game identifier

        Returns:
            Dict with nn_loss, vae_loss, feedback_triggered, alpha_used,
            current_alpha and predicted
        """
        x = self.encoder.to_tensor(features)
        mu, log_var = self.encoder.forward(x)
        sigma = torch.exp(0.5 * log_var)
        target = torch.as_tensor(np.asarray(actual, dtype=np.float32)).reshape(1, -1)

        predicted = self.predictor.forward(mu, sigma, opponent.mu, opponent.sigma, context)
        coupled_loss = cross_entropy(predicted, target)
        alpha_used = self.coordinator.apply(coupled_loss, game_id=game_id)
        feedback_triggered = alpha_used > 0

        nn_loss = self.predictor.train_step(
            mu.detach(), sigma.detach(), opponent.mu, opponent.sigma, context, actual
        )
        if event_probs is not None:
            vae_result = self.encoder.train_step(features, event_probs=event_probs, game_id=game_id)
        else:
            vae_result = self.encoder.train_step(features)

        self.total_iterations += 1
        self.nn_losses.append(nn_loss)
        if vae_result.get("skipped"):
            self.skipped_vae_updates += 1
        else:
            self.vae_losses.append(vae_result["total"])
        if feedback_triggered:
            self.feedback_triggers += 1
        self.convergence_achieved = self.check_convergence()

        return {
            "nn_loss": nn_loss,
            "vae_loss": None if vae_result.get("skipped") else vae_result["total"],
            "feedback_triggered": feedback_triggered,
            "alpha_used": alpha_used,
            "current_alpha": self.coordinator.current_alpha,
            "predicted": predicted.detach()[0].double().numpy(),
        }

    def check_convergence(self) -> bool:
        window = self.config.stability_window
        if len(self.nn_losses) < window or len(self.vae_losses) < window:
            return False
        nn_var = float(np.var(list(self.nn_losses)[-window:]))
        vae_var = float(np.var(list(self.vae_losses)[-window:]))
        return nn_var < self.config.convergence_threshold and vae_var < self.config.convergence_threshold

    def get_training_stats(self) -> Dict:
        return {
            "total_iterations": self.total_iterations,
            "feedback_triggers": self.feedback_triggers,
            "convergence_achieved": self.convergence_achieved,
            "average_nn_loss": float(np.mean(self.nn_losses)) if self.nn_losses else 0.0,
            "average_vae_loss": float(np.mean(self.vae_losses)) if self.vae_losses else 0.0,
            "skipped_vae_updates": self.skipped_vae_updates,
            "stability": self.coordinator.monitor_stability(),
        }

    def reset(self) -> None:
        self.coordinator.reset()
        self.nn_losses.clear()
        self.vae_losses.clear()
        self.total_iterations = 0
        self.feedback_triggers = 0
        self.skipped_vae_updates = 0
        self.convergence_achieved = False

    def to_dict(self) -> Dict:
        """Serializable FeedbackState plus counters."""
        return {
            **self.coordinator.to_dict(),
            "total_iterations": self.total_iterations,
            "feedback_triggers": self.feedback_triggers,
            "nn_losses": list(self.nn_losses),
            "vae_losses": list(self.vae_losses),
        }

    def load_dict(self, data: Dict) -> None:
        self.coordinator.load_dict(data)
        self.total_iterations = int(data.get("total_iterations", 0))
        self.feedback_triggers = int(data.get("feedback_triggers", 0))
        self.nn_losses.clear()
        self.nn_losses.extend(float(v) for v in data.get("nn_losses", []))
        self.vae_losses.clear()
        self.vae_losses.extend(float(v) for v in data.get("vae_losses", []))
        self.convergence_achieved = self.check_convergence()

    def snapshot(self) -> Dict:
        state = self.to_dict()
        state["recent"] = list(self.coordinator._recent)
        state["skipped_vae_updates"] = self.skipped_vae_updates
        return state

    def restore(self, snapshot: Dict) -> None:
        self.load_dict(snapshot)
        self.coordinator._recent.clear()
        self.coordinator._recent.extend(snapshot.get("recent", []))
        self.skipped_vae_updates = snapshot.get("skipped_vae_updates", 0)
