"""Validated configuration for every tunable component of the learning loop."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple

from .errors import ConfigurationError


def _require(condition: bool, message: str, component: str) -> None:
    if not condition:
        raise ConfigurationError(message, component=component)


@dataclass
class LatentEncoderConfig:
    """VAE architecture, optimizer and beta-annealing settings."""

    input_dim: int = 88
    latent_dim: int = 16
    hidden_dims: Tuple[int, ...] = (64, 32)
    learning_rate: float = 1e-3
    beta_min: float = 0.1
    beta_max: float = 3.0
    beta_warmup_steps: int = 50
    log_var_clamp: Tuple[float, float] = (-10.0, 10.0)
    grad_clip: float = 1.0
    noise_level: float = 0.1  # uniform input noise when sampling team distributions
    latent_dropout: float = 0.1

    def __post_init__(self):
        name = "LatentEncoderConfig"
        self.hidden_dims = tuple(int(h) for h in self.hidden_dims)
        self.log_var_clamp = (float(self.log_var_clamp[0]), float(self.log_var_clamp[1]))
        _require(self.input_dim > 0 and self.latent_dim > 0, "dimensions must be positive", name)
        _require(len(self.hidden_dims) > 0 and all(h > 0 for h in self.hidden_dims),
                 "hidden_dims must be non-empty and positive", name)
        _require(self.learning_rate > 0, f"learning_rate must be > 0, got {self.learning_rate}", name)
        _require(0 <= self.beta_min <= self.beta_max,
                 f"need 0 <= beta_min <= beta_max, got {self.beta_min}, {self.beta_max}", name)
        _require(self.beta_warmup_steps >= 0, "beta_warmup_steps must be >= 0", name)
        _require(self.log_var_clamp[0] < self.log_var_clamp[1], "log_var_clamp must be (low, high)", name)
        _require(self.grad_clip > 0, "grad_clip must be > 0", name)
        _require(0 <= self.noise_level < 1, "noise_level must be in [0, 1)", name)
        _require(0 <= self.latent_dropout < 1, "latent_dropout must be in [0, 1)", name)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ContrastiveConfig:
    """InfoNCE term settings for the contrastive encoder."""

    temperature: float = 0.1
    num_negatives: int = 64
    lambda_min: float = 0.3
    lambda_max: float = 0.8
    lambda_warmup_steps: int = 50
    negative_similarity_ceiling: float = 0.95
    cache_size: int = 2000

    def __post_init__(self):
        name = "ContrastiveConfig"
        _require(self.temperature > 0, f"temperature must be > 0, got {self.temperature}", name)
        _require(self.num_negatives > 0, "num_negatives must be > 0", name)
        _require(0 <= self.lambda_min <= self.lambda_max,
                 f"need 0 <= lambda_min <= lambda_max, got {self.lambda_min}, {self.lambda_max}", name)
        _require(self.lambda_warmup_steps >= 0, "lambda_warmup_steps must be >= 0", name)
        _require(-1.0 <= self.negative_similarity_ceiling <= 1.0,
                 "negative_similarity_ceiling must be a cosine similarity", name)
        _require(self.cache_size >= self.num_negatives, "cache_size must hold at least num_negatives", name)


@dataclass
class EventPredictorConfig:
    """Transition-probability network settings."""

    input_dim: int = 74
    hidden_dims: Tuple[int, ...] = (128, 64, 32)
    output_dim: int = 8
    learning_rate: float = 1e-3
    dropout: float = 0.1
    grad_clip: float = 1.0

    def __post_init__(self):
        name = "EventPredictorConfig"
        self.hidden_dims = tuple(int(h) for h in self.hidden_dims)
        _require(self.input_dim > 0 and self.output_dim > 1, "invalid input/output dimensions", name)
        _require(all(h > 0 for h in self.hidden_dims), "hidden_dims must be positive", name)
        _require(self.learning_rate > 0, f"learning_rate must be > 0, got {self.learning_rate}", name)
        _require(0 <= self.dropout < 1, "dropout must be in [0, 1)", name)
        _require(self.grad_clip > 0, "grad_clip must be > 0", name)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class FeedbackConfig:
    """
    Coupling between predictor loss and encoder weights.

    Valid ranges:
        feedback_threshold > 0
        0 < min_alpha <= initial_alpha
        0 < alpha_decay_rate <= 1
    """

    feedback_threshold: float = 0.5
    initial_alpha: float = 0.1
    alpha_decay_rate: float = 0.99
    min_alpha: float = 0.001
    stability_window: int = 10
    convergence_threshold: float = 1e-6
    max_history: int = 1000

    def __post_init__(self):
        name = "FeedbackConfig"
        _require(self.feedback_threshold > 0,
                 f"feedback_threshold must be > 0, got {self.feedback_threshold}", name)
        _require(0 < self.min_alpha <= self.initial_alpha,
                 f"need 0 < min_alpha <= initial_alpha, got {self.min_alpha}, {self.initial_alpha}", name)
        _require(0 < self.alpha_decay_rate <= 1,
                 f"alpha_decay_rate must be in (0, 1], got {self.alpha_decay_rate}", name)
        _require(self.stability_window > 1, "stability_window must be > 1", name)
        _require(self.convergence_threshold > 0, "convergence_threshold must be > 0", name)
        _require(self.max_history >= self.stability_window, "max_history must cover stability_window", name)


@dataclass
class BeliefConfig:
    """Team posterior update settings, including season handling."""

    latent_dim: int = 16
    initial_uncertainty: float = 1.0
    new_team_uncertainty: float = 1.5  # teams with no recent games
    min_uncertainty: float = 0.1
    max_uncertainty: float = 2.0
    learning_rate: float = 0.5
    max_mu_step: float = 0.5
    max_sigma_step: float = 0.25
    observation_base_uncertainty: float = 0.5
    error_uncertainty_gain: float = 2.0
    contradiction_z: float = 3.0
    inter_year_variance: float = 0.25
    cross_season_decay: float = 0.7
    season_start_month: int = 11
    enable_season_transitions: bool = True

    def __post_init__(self):
        name = "BeliefConfig"
        _require(self.latent_dim > 0, "latent_dim must be > 0", name)
        _require(0 < self.min_uncertainty < self.max_uncertainty,
                 f"need 0 < min_uncertainty < max_uncertainty, got {self.min_uncertainty}, {self.max_uncertainty}",
                 name)
        for field_name in ("initial_uncertainty", "new_team_uncertainty"):
            value = getattr(self, field_name)
            _require(self.min_uncertainty <= value <= self.max_uncertainty,
                     f"{field_name} must lie in [min_uncertainty, max_uncertainty], got {value}", name)
        _require(0 < self.learning_rate <= 1, f"learning_rate must be in (0, 1], got {self.learning_rate}", name)
        _require(self.max_mu_step > 0 and self.max_sigma_step > 0, "step clips must be > 0", name)
        _require(self.observation_base_uncertainty > 0, "observation_base_uncertainty must be > 0", name)
        _require(self.error_uncertainty_gain >= 0, "error_uncertainty_gain must be >= 0", name)
        _require(self.contradiction_z > 0, "contradiction_z must be > 0", name)
        _require(self.inter_year_variance >= 0, "inter_year_variance must be >= 0", name)
        _require(0 < self.cross_season_decay <= 1, "cross_season_decay must be in (0, 1]", name)
        _require(1 <= self.season_start_month <= 12, "season_start_month must be a month", name)


@dataclass
class MonitorConfig:
    """Rolling-window monitoring and alert thresholds."""

    window_size: int = 100
    convergence_threshold: float = 0.1
    degradation_threshold: float = 0.2
    excessive_feedback_rate: float = 0.8
    min_sigma_reduction: float = 1e-3
    sigma_floor: float = 0.1  # stagnation is not checked at or below this mean sigma
    alert_cooldown_games: int = 10
    max_alerts: int = 200  # oldest alerts are dropped beyond this

    def __post_init__(self):
        name = "MonitorConfig"
        _require(self.window_size >= 3, "window_size must be >= 3 to compare thirds", name)
        _require(self.convergence_threshold > 0, "convergence_threshold must be > 0", name)
        _require(self.degradation_threshold > 0, "degradation_threshold must be > 0", name)
        _require(0 < self.excessive_feedback_rate <= 1, "excessive_feedback_rate must be in (0, 1]", name)
        _require(self.min_sigma_reduction >= 0, "min_sigma_reduction must be >= 0", name)
        _require(self.alert_cooldown_games >= 0, "alert_cooldown_games must be >= 0", name)
        _require(self.max_alerts >= 1, "max_alerts must be >= 1", name)


@dataclass
class OrchestratorConfig:
    """Control-loop settings."""

    batch_size: int = 1
    max_retries: int = 3
    retry_base_delay_ms: float = 1000.0
    retry_max_delay_ms: float = 10000.0
    persist_retries: int = 3
    continue_on_error: bool = True
    save_interval: int = 10
    validation_interval: int = 25
    validation_window: int = 25
    use_contrastive: bool = False
    random_seed: Optional[int] = None

    def __post_init__(self):
        name = "OrchestratorConfig"
        # Posterior evolution is order-dependent; one game per step.
        _require(self.batch_size == 1, f"batch_size must be 1, got {self.batch_size}", name)
        _require(self.max_retries >= 0, "max_retries must be >= 0", name)
        _require(0 <= self.retry_base_delay_ms <= self.retry_max_delay_ms,
                 "need 0 <= retry_base_delay_ms <= retry_max_delay_ms", name)
        _require(self.persist_retries >= 1, "persist_retries must be >= 1", name)
        _require(self.save_interval > 0, "save_interval must be > 0", name)
        _require(self.validation_interval > 0, "validation_interval must be > 0", name)
        _require(self.validation_window > 0, "validation_window must be > 0", name)
