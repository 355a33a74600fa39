"""
InfoNCE contrastive extension of the latent encoder.

Pulls a team's latent toward an embedding of its own observed event
probabilities and away from embeddings of dissimilar games, so the latent
space is predictive of outcomes rather than only reconstructive.
"""

import logging
from collections import deque
from typing import Dict, Optional

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
from sklearn.metrics.pairwise import cosine_similarity

from ..config import ContrastiveConfig, LatentEncoderConfig
from ..data.features import EVENT_DIM
from .latent_encoder import LatentEncoder, linear_anneal

logger = logging.getLogger(__name__)


class InfoNCELoss(nn.Module):
    """
    InfoNCE over cosine similarities scaled by a temperature.

    For anchor z, positive e+ and negatives e-_k:
        s = cos(z, e) / T
        loss = logsumexp([s+, s-_1, ..., s-_K]) - s+
    """

    def __init__(self, temperature: float = 0.1):
        super().__init__()
        self.temperature = temperature

    def forward(self, anchor: torch.Tensor, positive: torch.Tensor, negatives: torch.Tensor) -> torch.Tensor:
        """
        Args:
            anchor: [B, D]
            positive: [B, D]
            negatives: [K, D] shared by every anchor

        Returns:
            Mean loss over the batch
        """
        pos = F.cosine_similarity(anchor, positive, dim=-1) / self.temperature  # [B]
        if negatives.numel() == 0:
            return torch.zeros((), dtype=anchor.dtype)
        neg = F.cosine_similarity(anchor.unsqueeze(1), negatives.unsqueeze(0), dim=-1) / self.temperature  # [B, K]
        logits = torch.cat([pos.unsqueeze(1), neg], dim=1)
        return (torch.logsumexp(logits, dim=1) - pos).mean()


class LabelEmbedding(nn.Module):
    """Linear projection of event probabilities into latent space."""

    def __init__(self, event_dim: int = EVENT_DIM, latent_dim: int = 16):
        super().__init__()
        self.proj = nn.Linear(event_dim, latent_dim)

    def forward(self, probs: torch.Tensor) -> torch.Tensor:
        return self.proj(probs)


class NegativeSampler:
    """Bounded cache of observed event distributions used as contrastive negatives."""

    def __init__(self, config: Optional[ContrastiveConfig] = None, seed: Optional[int] = None):
        self.config = config or ContrastiveConfig()
        self.rng = np.random.default_rng(seed)
        self.entries: deque = deque(maxlen=self.config.cache_size)

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, game_id: str, probs) -> None:
        arr = np.asarray(probs, dtype=np.float64)
        if arr.sum() <= 0:
            return
        self.entries.append((str(game_id), arr))

    def sample(self, probs, n: Optional[int] = None, exclude_game_id: Optional[str] = None) -> np.ndarray:
        """
        Draw up to ``n`` negatives that are dissimilar to ``probs``.

        Entries from ``exclude_game_id`` are never returned. Candidates with
        cosine similarity below the configured ceiling are sampled uniformly;
        if there are too few, the least similar entries fill the remainder.

        Returns:
            Array [k, 8] with k <= n (empty when the cache has no candidates)
        """
        n = n or self.config.num_negatives
        candidates = [p for gid, p in self.entries if gid != str(exclude_game_id)]
        if not candidates:
            return np.zeros((0, EVENT_DIM))

        pool = np.stack(candidates)
        query = np.asarray(probs, dtype=np.float64).reshape(1, -1)
        if query.sum() <= 0:
            order = self.rng.permutation(len(pool))[:n]
            return pool[order]

        sims = cosine_similarity(query, pool)[0]
        dissimilar = np.flatnonzero(sims < self.config.negative_similarity_ceiling)
        if len(dissimilar) >= n:
            chosen = self.rng.choice(dissimilar, size=n, replace=False)
        else:
            chosen = np.argsort(sims)[:n]
        return pool[chosen]


class ContrastiveLatentEncoder(LatentEncoder):
    """LatentEncoder trained on ``VAE + lambda * InfoNCE``."""

    def __init__(
        self,
        config: Optional[LatentEncoderConfig] = None,
        contrastive_config: Optional[ContrastiveConfig] = None,
        seed: Optional[int] = None,
    ):
        super().__init__(config, seed=seed)
        self.contrastive_config = contrastive_config or ContrastiveConfig()
        self.label_embedding = LabelEmbedding(EVENT_DIM, self.config.latent_dim)
        self.infonce = InfoNCELoss(self.contrastive_config.temperature)
        self.sampler = NegativeSampler(self.contrastive_config, seed=seed)
        # Label embedding is trained jointly with the encoder.
        self.optimizer = torch.optim.Adam(
            list(self.model.parameters()) + list(self.label_embedding.parameters()),
            lr=self.config.learning_rate,
        )

    def get_lambda(self) -> float:
        cfg = self.contrastive_config
        return linear_anneal(self.training_step, cfg.lambda_min, cfg.lambda_max, cfg.lambda_warmup_steps)

    def _objective(self, x: torch.Tensor, event_probs=None, game_id: Optional[str] = None, **kwargs):
        total, parts = super()._objective(x)
        parts["infonce_loss"] = 0.0
        parts["lambda"] = self.get_lambda()
        parts["negatives"] = 0
        if event_probs is None:
            return total, parts

        negatives = self.sampler.sample(event_probs, exclude_game_id=game_id)
        if len(negatives) > 0:
            mu, _ = self.forward(x)
            probs_t = torch.as_tensor(np.asarray(event_probs, dtype=np.float32)).reshape(1, -1)
            positive = self.label_embedding(probs_t)
            negative_emb = self.label_embedding(torch.as_tensor(negatives, dtype=torch.float32))
            contrastive = self.infonce(mu, positive, negative_emb)
            total = total + parts["lambda"] * contrastive
            parts["infonce_loss"] = float(contrastive.item())
            parts["negatives"] = int(len(negatives))
            logger.debug("InfoNCE loss %.4f with %d negatives (lambda=%.3f)",
                         parts["infonce_loss"], parts["negatives"], parts["lambda"])
        return total, parts

    def train_step(self, features, event_probs=None, game_id: Optional[str] = None, **kwargs) -> Dict[str, float]:
        result = super().train_step(features, event_probs=event_probs, game_id=game_id)
        # Cache after the step so a game never serves as its own negative.
        if event_probs is not None and game_id is not None and not result.get("skipped"):
            self.sampler.add(game_id, event_probs)
        return result

    def get_weights(self) -> Dict:
        weights = super().get_weights()
        weights["label_embedding"] = {
            k: v.detach().cpu().tolist() for k, v in self.label_embedding.state_dict().items()
        }
        return weights

    def set_weights(self, weights: Dict) -> None:
        super().set_weights(weights)
        if "label_embedding" in weights:
            self.label_embedding.load_state_dict(
                {k: torch.tensor(v, dtype=torch.float32) for k, v in weights["label_embedding"].items()}
            )

    def snapshot(self) -> Dict:
        snap = super().snapshot()
        snap["label_embedding"] = {k: v.clone() for k, v in self.label_embedding.state_dict().items()}
        snap["negatives"] = list(self.sampler.entries)
        return snap

    def restore(self, snapshot: Dict) -> None:
        super().restore(snapshot)
        self.label_embedding.load_state_dict(snapshot["label_embedding"])
        self.sampler.entries.clear()
        self.sampler.entries.extend(snapshot["negatives"])
