"""
Variational autoencoder that compresses a team's game into a latent style.

The encoder maps an 88-dim normalized box-score vector to a 16-dim diagonal
Gaussian (mu, log-variance). The decoder maps a reparameterized sample back
to feature space. Training minimizes

    MSE(x, x_hat) + beta * KL(N(mu, exp(log_var)) || N(0, I))

with beta annealed linearly over the first ``beta_warmup_steps`` updates.
"""

import copy
import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from ..config import LatentEncoderConfig
from ..errors import DataError, NumericInstabilityError, PersistenceError, sanitize
from ..models.posterior import LatentDistribution

logger = logging.getLogger(__name__)


def kl_divergence(mu: torch.Tensor, log_var: torch.Tensor) -> torch.Tensor:
    """Closed-form KL of N(mu, diag(exp(log_var))) from N(0, I), summed over dims, mean over batch."""
    kl = -0.5 * torch.sum(1 + log_var - mu.pow(2) - log_var.exp(), dim=-1)
    return kl.mean()


def linear_anneal(step: int, low: float, high: float, warmup_steps: int) -> float:
    """Ramp from ``low`` to ``high`` over ``warmup_steps`` then hold."""
    if warmup_steps <= 0 or step >= warmup_steps:
        return high
    return low + (high - low) * step / warmup_steps


class VariationalAutoencoder(nn.Module):
    """Encoder/decoder pair with Gaussian latent."""

    def __init__(self, input_dim: int = 88, latent_dim: int = 16, hidden_dims: Sequence[int] = (64, 32)):
        super().__init__()

        encoder_layers = []
        prev = input_dim
        for width in hidden_dims:
            encoder_layers += [nn.Linear(prev, width), nn.ReLU()]
            prev = width
        self.encoder = nn.Sequential(*encoder_layers)
        self.mu_head = nn.Linear(prev, latent_dim)
        self.log_var_head = nn.Linear(prev, latent_dim)

        decoder_layers = []
        prev = latent_dim
        for width in reversed(hidden_dims):
            decoder_layers += [nn.Linear(prev, width), nn.ReLU()]
            prev = width
        decoder_layers += [nn.Linear(prev, input_dim), nn.Sigmoid()]
        self.decoder = nn.Sequential(*decoder_layers)

    def encode(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        hidden = self.encoder(x)
        return self.mu_head(hidden), self.log_var_head(hidden)

    @staticmethod
    def reparameterize(mu: torch.Tensor, log_var: torch.Tensor) -> torch.Tensor:
        std = torch.exp(0.5 * log_var)
        return mu + std * torch.randn_like(std)

    def decode(self, z: torch.Tensor) -> torch.Tensor:
        return self.decoder(z)

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        mu, log_var = self.encode(x)
        return self.decode(self.reparameterize(mu, log_var)), mu, log_var


class LatentEncoder:
    """
    Owns the VAE weights, its optimizer and its training-step counter.

    Numeric inputs and outputs are numpy arrays; tensors only appear on the
    ``forward`` path used by the feedback trainer.
    """

    model_name = "latent_encoder"

    def __init__(self, config: Optional[LatentEncoderConfig] = None, seed: Optional[int] = None):
        self.config = config or LatentEncoderConfig()
        if seed is not None:
            torch.manual_seed(seed)
        self.rng = np.random.default_rng(seed)

        self.model = VariationalAutoencoder(
            input_dim=self.config.input_dim,
            latent_dim=self.config.latent_dim,
            hidden_dims=self.config.hidden_dims,
        )
        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=self.config.learning_rate)
        self.training_step = 0

    # ------------------------------------------------------------------
    # Tensor helpers
    # ------------------------------------------------------------------

    def to_tensor(self, features) -> torch.Tensor:
        arr = np.asarray(features, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr[None, :]
        if arr.ndim != 2 or arr.shape[1] != self.config.input_dim:
            raise DataError(
                f"expected {self.config.input_dim} features, got shape {arr.shape}",
                component=self.model_name,
            )
        if not np.all(np.isfinite(arr)):
            raise DataError("features contain non-finite values", component=self.model_name)
        return torch.as_tensor(arr)

    def clamp_log_var(self, log_var: torch.Tensor) -> torch.Tensor:
        low, high = self.config.log_var_clamp
        return torch.clamp(log_var, low, high)

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Differentiable encode with clamped log-variance."""
        mu, log_var = self.model.encode(x)
        return mu, self.clamp_log_var(log_var)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def encode(self, features) -> Tuple[np.ndarray, np.ndarray]:
        """Return (mu, log_var) for a single 88-dim feature vector."""
        self.model.eval()
        with torch.no_grad():
            mu, log_var = self.forward(self.to_tensor(features))
        return mu[0].numpy().astype(np.float64), log_var[0].numpy().astype(np.float64)

    def decode(self, mu, log_var, sample: bool = True) -> np.ndarray:
        """Reconstruct features from a latent distribution, sampling z when ``sample`` is set."""
        mu_t = torch.as_tensor(np.asarray(mu, dtype=np.float32)).reshape(1, -1)
        log_var_t = self.clamp_log_var(torch.as_tensor(np.asarray(log_var, dtype=np.float32)).reshape(1, -1))
        self.model.eval()
        with torch.no_grad():
            z = self.model.reparameterize(mu_t, log_var_t) if sample else mu_t
            reconstruction = self.model.decode(z)
        return reconstruction[0].numpy().astype(np.float64)

    def reconstruct(self, features) -> np.ndarray:
        mu, log_var = self.encode(features)
        return self.decode(mu, log_var)

    def encode_game_to_team_distribution(self, features, add_noise: bool = False) -> LatentDistribution:
        """
        Encode one team's game into a latent distribution.

        Args:
            features: 88-dim normalized feature vector
            add_noise: Perturb inputs with uniform noise and randomly drop latent
                dimensions, used when sampling rather than estimating

        Returns:
            LatentDistribution for the team in this game
        """
        x = np.asarray(features, dtype=np.float64)
        if add_noise and self.config.noise_level > 0:
            noise = self.rng.uniform(-self.config.noise_level, self.config.noise_level, size=x.shape)
            x = np.clip(x + noise, 0.0, 1.0)
        mu, log_var = self.encode(x)
        if add_noise and self.config.latent_dropout > 0:
            keep = self.rng.random(mu.shape) >= self.config.latent_dropout
            mu = mu * keep
        return LatentDistribution(mu=mu, log_var=log_var)

    # ------------------------------------------------------------------
    # Losses and training
    # ------------------------------------------------------------------

    def get_beta(self) -> float:
        return linear_anneal(
            self.training_step, self.config.beta_min, self.config.beta_max, self.config.beta_warmup_steps
        )

    def loss(self, features, reconstruction, mu, log_var) -> Dict[str, float]:
        """
        Evaluate the VAE objective for given arrays.

        Returns:
            Dict with reconstruction_loss, kl_loss, beta and total
        """
        x = torch.as_tensor(np.asarray(features, dtype=np.float32)).reshape(1, -1)
        x_hat = torch.as_tensor(np.asarray(reconstruction, dtype=np.float32)).reshape(1, -1)
        mu_t = torch.as_tensor(np.asarray(mu, dtype=np.float32)).reshape(1, -1)
        log_var_t = self.clamp_log_var(torch.as_tensor(np.asarray(log_var, dtype=np.float32)).reshape(1, -1))
        beta = self.get_beta()
        recon = sanitize(F.mse_loss(x_hat, x), "reconstruction_loss")
        kl = sanitize(kl_divergence(mu_t, log_var_t), "kl_loss")
        return {
            "reconstruction_loss": recon,
            "kl_loss": kl,
            "beta": beta,
            "total": recon + beta * kl,
        }

    def _objective(self, x: torch.Tensor, **kwargs) -> Tuple[torch.Tensor, Dict[str, float]]:
        mu, log_var = self.forward(x)
        z = self.model.reparameterize(mu, log_var)
        reconstruction = self.model.decode(z)
        recon_loss = F.mse_loss(reconstruction, x)
        kl_loss = kl_divergence(mu, log_var)
        beta = self.get_beta()
        total = recon_loss + beta * kl_loss
        parts = {
            "reconstruction_loss": float(recon_loss.item()),
            "kl_loss": float(kl_loss.item()),
            "beta": beta,
        }
        return total, parts

    def train_step(self, features, **kwargs) -> Dict[str, float]:
        """
        One Adam update on a single game's features.

        A non-finite loss skips the update and returns ``{"skipped": True}``
        alongside the offending loss parts.
        """
        x = self.to_tensor(features)
        self.model.train()
        self.optimizer.zero_grad()
        total, parts = self._objective(x, **kwargs)
        try:
            total_value = sanitize(total, component=self.model_name)
        except NumericInstabilityError as exc:
            logger.warning("Skipping %s update: %s", self.model_name, exc)
            self.optimizer.zero_grad()
            return {**parts, "total": float("nan"), "skipped": True}

        total.backward()
        torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=self.config.grad_clip)
        self.optimizer.step()
        self.training_step += 1
        return {**parts, "total": total_value, "skipped": False}

    def apply_feedback(self, auxiliary_loss: torch.Tensor) -> None:
        """Backpropagate an auxiliary scalar loss into the encoder weights only."""
        self.model.train()
        self.optimizer.zero_grad()
        auxiliary_loss.backward()
        torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=self.config.grad_clip)
        self.optimizer.step()
        self.optimizer.zero_grad()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_weights(self) -> Dict:
        return {
            "model": self.model_name,
            "state": {k: v.detach().cpu().tolist() for k, v in self.model.state_dict().items()},
            "training_step": self.training_step,
            "config": self.config.to_dict(),
        }

    def set_weights(self, weights: Dict) -> None:
        state = weights.get("state", {})
        try:
            tensors = {k: torch.tensor(v, dtype=torch.float32) for k, v in state.items()}
            self.model.load_state_dict(tensors)
        except (RuntimeError, TypeError, ValueError) as exc:
            raise PersistenceError(f"incompatible weights: {exc}", component=self.model_name) from exc
        self.training_step = int(weights.get("training_step", 0))

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
