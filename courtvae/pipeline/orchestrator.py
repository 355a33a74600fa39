"""
Online learning control loop.

Processes unprocessed games strictly in (game_date, game_id) order. Each game
goes through these steps:

    extract -> encode -> predict -> loss -> feedback? -> posterior update
            -> persist -> mark processed -> monitor

Only this class mutates model weights, feedback state, team posteriors and
processed markers. A game is marked processed only after its posteriors are
saved, so an interrupted run can be resumed by calling ``start`` again.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.stats import entropy

from ..beliefs.team_updater import TeamBeliefUpdater, performance_signal, prediction_error
from ..config import (
    BeliefConfig,
    ContrastiveConfig,
    EventPredictorConfig,
    FeedbackConfig,
    LatentEncoderConfig,
    MonitorConfig,
    OrchestratorConfig,
)
from ..data.features import is_empty_distribution, validate_event_probabilities, validate_feature_vector
from ..data.repository import FeatureExtractor, GameSource, ModelStore, PosteriorStore
from ..errors import ConcurrencyError, ConfigurationError, DataError, NumericInstabilityError, PersistenceError
from ..ml.contrastive import ContrastiveLatentEncoder
from ..ml.event_predictor import EventPredictor
from ..ml.feedback import FeedbackTrainer
from ..ml.latent_encoder import LatentEncoder
from ..models.game import CONTEXT_DIM, GameContext, GameFeatures, GameInfo
from ..models.posterior import LatentDistribution, TeamPosterior
from ..monitoring.performance import PerformanceMonitor

logger = logging.getLogger(__name__)

FEEDBACK_STATE = "feedback_state"
RETRYABLE_ERRORS = (NumericInstabilityError, PersistenceError)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class GameResult:
    """Outcome of processing one game."""

    game_id: str
    game_date: str
    success: bool
    attempts: int = 1
    processing_time_ms: float = 0.0
    losses: Dict = field(default_factory=dict)
    predictions: Dict = field(default_factory=dict)
    teams: Dict = field(default_factory=dict)
    predictor_skipped: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    component: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class _TeamSide:
    side: str
    team_id: str
    features: np.ndarray
    actual: np.ndarray
    prior: Optional[TeamPosterior]
    latent: Optional[LatentDistribution] = None


def backoff_delay_ms(attempt: int, base_ms: float, max_ms: float) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    return min(base_ms * (2 ** (attempt - 1)), max_ms)


class OnlineLearningOrchestrator:
    """Sequential online training of encoder, predictor and team posteriors."""

    def __init__(
        self,
        games: GameSource,
        features: FeatureExtractor,
        posteriors: PosteriorStore,
        models: ModelStore,
        config: Optional[OrchestratorConfig] = None,
        encoder_config: Optional[LatentEncoderConfig] = None,
        contrastive_config: Optional[ContrastiveConfig] = None,
        predictor_config: Optional[EventPredictorConfig] = None,
        feedback_config: Optional[FeedbackConfig] = None,
        belief_config: Optional[BeliefConfig] = None,
        monitor_config: Optional[MonitorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.games = games
        self.features = features
        self.posteriors = posteriors
        self.models = models
        self.config = config or OrchestratorConfig()
        self._sleep = sleep

        seed = self.config.random_seed
        if self.config.use_contrastive:
            self.encoder: LatentEncoder = ContrastiveLatentEncoder(encoder_config, contrastive_config, seed=seed)
        else:
            self.encoder = LatentEncoder(encoder_config, seed=seed)
        self.predictor = EventPredictor(predictor_config, latent_dim=self.encoder.config.latent_dim)
        self.trainer = FeedbackTrainer(self.encoder, self.predictor, feedback_config)
        self.updater = TeamBeliefUpdater(belief_config)
        self.monitor = PerformanceMonitor(monitor_config)

        self.state = OrchestratorState.IDLE
        self.current_game_id: Optional[str] = None
        self.last_summary: Optional[Dict] = None
        self.validation_history: List[Dict] = []
        self.checkpoint_failures = 0
        self._validation_buffer = deque(maxlen=self.config.validation_window)
        self._stop_requested = False
        self._models_loaded = False
        self._games_since_save = 0
        self._successful_total = 0

    @classmethod
    def from_repository(cls, repository, **kwargs) -> "OnlineLearningOrchestrator":
        """Build from a single object implementing all four collaborator interfaces."""
        return cls(repository, repository, repository, repository, **kwargs)

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.state in (OrchestratorState.RUNNING, OrchestratorState.STOPPING)

    def stop(self) -> None:
        """Request a cooperative stop; the in-flight game completes first."""
        if self.state == OrchestratorState.RUNNING:
            logger.info("Stop requested; finishing current game")
            self.state = OrchestratorState.STOPPING
            self._stop_requested = True

    def start(
        self,
        max_games: Optional[int] = None,
        start_from_game_id: Optional[str] = None,
        on_progress: Optional[Callable[[int, int, GameResult], None]] = None,
        on_game_complete: Optional[Callable[[GameResult], None]] = None,
        on_error: Optional[Callable[[Exception, GameInfo], None]] = None,
    ) -> Dict:
        """
        Process pending games in chronological order.

        Args:
            max_games: Maximum number of games to process
            start_from_game_id: Only consider games on or after this game's date
            on_progress: Called as (current, total, result) after each game
            on_game_complete: Called with each successful GameResult
            on_error: Called with (error, game) for each failed game

        Returns:
            Dict with ``summary`` (total_games_processed, successful_games,
            failed_games, success_rate, average_processing_time_ms), ``errors``
            and ``results``

        Raises:
            ConcurrencyError: If a run is already in progress
            ConfigurationError: If max_games is negative
            CourtVAEError: Run-level failures (fetching games, loading models), or
                the first per-game error when ``continue_on_error`` is False
        """
        if self.is_running:
            raise ConcurrencyError("orchestrator is already running", component="orchestrator")
        if max_games is not None and max_games < 0:
            raise ConfigurationError(f"max_games must be non-negative, got {max_games}", component="orchestrator")

        self.state = OrchestratorState.RUNNING
        self._stop_requested = False
        results: List[GameResult] = []
        errors: List[Dict] = []

        try:
            self._load_models()
            pending = self.games.next_unprocessed_games(limit=max_games, start_from_game_id=start_from_game_id)
            pending = self.ensure_chronological(pending)
        except Exception:
            self.state = OrchestratorState.FAILED
            logger.exception("Run failed before processing games")
            raise

        total = len(pending)
        logger.info("Starting online learning run over %d games", total)

        for index, game in enumerate(pending, start=1):
            if self._stop_requested:
                logger.info("Stopped before game %s", game.game_id)
                break

            self.current_game_id = game.game_id
            result, exc = self._process_with_retry(game)
            results.append(result)

            if result.success:
                self._successful_total += 1
                self._games_since_save += 1
                self._notify(on_game_complete, result)
                self._periodic_tasks()
            else:
                errors.append(
                    {
                        "game_id": game.game_id,
                        "game_date": game.game_date.isoformat(),
                        "error": result.error,
                        "error_type": result.error_type,
                        "component": result.component,
                        "attempts": result.attempts,
                    }
                )
                self._notify(on_error, exc, game)
                if not self.config.continue_on_error:
                    self.current_game_id = None
                    if self._games_since_save:
                        self.save_models()
                    self.last_summary = self._summarize(results, errors, stopped=False)
                    self.state = OrchestratorState.FAILED
                    logger.error("Run failed on game %s: %s", game.game_id, result.error)
                    raise exc

            self._notify(on_progress, index, total, result)

        self.current_game_id = None
        if self._games_since_save:
            self.save_models()

        stopped = self._stop_requested
        self.state = OrchestratorState.IDLE
        self._stop_requested = False
        self.last_summary = self._summarize(results, errors, stopped=stopped)
        summary = self.last_summary["summary"]
        logger.info(
            "Run complete: %d processed, %d succeeded, %d failed (%.1f%%)",
            summary["total_games_processed"], summary["successful_games"],
            summary["failed_games"], 100.0 * summary["success_rate"],
        )
        return self.last_summary

    @staticmethod
    def ensure_chronological(games: List[GameInfo]) -> List[GameInfo]:
        """Drop duplicates and already-processed games, then order by (date, id)."""
        seen = set()
        unique = []
        for game in games:
            if game.game_id in seen or game.processed:
                continue
            seen.add(game.game_id)
            unique.append(game)
        keys = [g.sort_key for g in unique]
        if keys != sorted(keys):
            logger.warning("Received %d games out of chronological order; re-sorting", len(unique))
            unique.sort(key=lambda g: g.sort_key)
        return unique

    def _summarize(self, results: List[GameResult], errors: List[Dict], stopped: bool) -> Dict:
        successful = [r for r in results if r.success]
        processed = len(results)
        times = [r.processing_time_ms for r in results]
        return {
            "summary": {
                "total_games_processed": processed,
                "successful_games": len(successful),
                "failed_games": processed - len(successful),
                "success_rate": len(successful) / processed if processed else 0.0,
                "average_processing_time_ms": float(np.mean(times)) if times else 0.0,
                "stopped": stopped,
            },
            "errors": errors,
            "results": [r.to_dict() for r in results],
        }

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Callback %r failed", callback)

    # ------------------------------------------------------------------
    # Per-game processing
    # ------------------------------------------------------------------

    def _process_with_retry(self, game: GameInfo) -> Tuple[GameResult, Optional[Exception]]:
        attempts = 0
        last_exc: Optional[Exception] = None
        started = time.perf_counter()
        while True:
            attempts += 1
            checkpoint = self._checkpoint()
            try:
                result = self._process_game(game)
                result.attempts = attempts
                return result, None
            except ConcurrencyError:
                raise
            except Exception as exc:
                self._rollback(checkpoint)
                last_exc = exc
                logger.warning("Game %s failed on attempt %d: %s", game.game_id, attempts, exc)
                if not isinstance(exc, RETRYABLE_ERRORS) or attempts > self.config.max_retries:
                    break
                delay = backoff_delay_ms(attempts, self.config.retry_base_delay_ms, self.config.retry_max_delay_ms)
                self._sleep(delay / 1000.0)

        logger.error("Game %s failed after %d attempts: %s", game.game_id, attempts, last_exc)
        return (
            GameResult(
                game_id=game.game_id,
                game_date=game.game_date.isoformat(),
                success=False,
                attempts=attempts,
                processing_time_ms=(time.perf_counter() - started) * 1000.0,
                error=str(last_exc),
                error_type=type(last_exc).__name__,
                component=getattr(last_exc, "component", None),
            ),
            last_exc,
        )

    def _process_game(self, game: GameInfo) -> GameResult:
        started = time.perf_counter()
        payload = self.features.extract_features(game.game_id)
        self._validate_payload(game, payload)

        context = payload.context
        if context.game_date is None:
            context = replace(context, game_date=game.game_date)
        context_vector = context.to_vector()

        home = _TeamSide("home", game.home_team_id, *payload.for_team("home")[:2], prior=None)
        away = _TeamSide("away", game.away_team_id, *payload.for_team("away")[:2], prior=None)
        posteriors_available = True
        for side in (home, away):
            try:
                side.prior = self._load_prior(side.team_id, game)
            except PersistenceError as exc:
                posteriors_available = False
                logger.warning("Posterior for %s unavailable: %s", side.team_id, exc)
            side.latent = self.encoder.encode_game_to_team_distribution(side.features)

        losses: Dict = {}
        predictions: Dict = {}
        errors = {"home": 0.0, "away": 0.0}
        signals = {"home": 0.0, "away": 0.0}
        feedback_triggered = False
        vae_losses = []
        nn_losses = []

        if posteriors_available:
            for side, opponent in ((home, away), (away, home)):
                predicted = self.predictor.predict(
                    side.latent.mu, side.latent.sigma, opponent.latent.mu, opponent.latent.sigma, context_vector
                )
                predictions[side.side] = [float(p) for p in predicted]
                errors[side.side] = prediction_error(predicted, side.actual)
                signals[side.side] = performance_signal(side.actual, predicted)

            for side, opponent in ((home, away), (away, home)):
                training = self.trainer.train_on_game(
                    side.features,
                    side.actual,
                    opponent.latent,
                    context_vector,
                    event_probs=side.actual if self.config.use_contrastive else None,
                    game_id=game.game_id,
                )
                losses[side.side] = training["nn_loss"]
                nn_losses.append(training["nn_loss"])
                if training["vae_loss"] is not None:
                    vae_losses.append(training["vae_loss"])
                feedback_triggered = feedback_triggered or training["feedback_triggered"]
        else:
            logger.warning("Skipping predictor for game %s; updating encoder only", game.game_id)
            for side in (home, away):
                vae = self.encoder.train_step(side.features)
                if not vae.get("skipped"):
                    vae_losses.append(vae["total"])

        updates = []
        for side in (home, away):
            if side.prior is None:
                continue
            posterior = self.updater.update(
                side.team_id, side.latent, context, errors[side.side], prior=side.prior
            )
            updates.append((side, posterior))

        self._persist(game, updates)

        teams = {}
        for side, posterior in updates:
            sigma_reduction = side.prior.mean_sigma - posterior.mean_sigma
            self.monitor.record_team_convergence(side.team_id, posterior, sigma_reduction)
            teams[side.side] = {
                "team_id": side.team_id,
                "games_processed": posterior.games_processed,
                "mean_sigma": posterior.mean_sigma,
                "sigma_reduction": sigma_reduction,
                "prediction_error": errors[side.side],
                "performance_signal": signals[side.side],
            }

        if nn_losses:
            self.monitor.record_prediction_performance(
                nn_loss=float(np.mean(nn_losses)),
                vae_loss=float(np.mean(vae_losses)) if vae_losses else None,
                feedback_triggered=feedback_triggered,
                current_alpha=self.trainer.coordinator.current_alpha,
                game_id=game.game_id,
            )
            self._validation_buffer.append((home.latent, away.latent, context_vector, home.actual, away.actual))

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "Processed game %s (%s): %s vs %s, loss %.4f/%.4f, feedback=%s, %.0fms",
            game.game_id, game.game_date.isoformat(), game.home_team_id, game.away_team_id,
            losses.get("home", float("nan")), losses.get("away", float("nan")), feedback_triggered, elapsed_ms,
        )
        losses["feedback_triggered"] = feedback_triggered
        return GameResult(
            game_id=game.game_id,
            game_date=game.game_date.isoformat(),
            success=True,
            processing_time_ms=elapsed_ms,
            losses=losses,
            predictions=predictions,
            teams=teams,
            predictor_skipped=not posteriors_available,
        )

    def _validate_payload(self, game: GameInfo, payload: GameFeatures) -> None:
        for name in ("home", "away"):
            validate_feature_vector(getattr(payload, name), game_id=game.game_id)
            actual = validate_event_probabilities(getattr(payload, f"{name}_actual"), game_id=game.game_id)
            if is_empty_distribution(actual):
                raise DataError(f"{name} team has no recorded possessions", game_id=game.game_id,
                                component="ground_truth")
        if payload.context.to_vector().shape != (CONTEXT_DIM,):
            raise DataError("invalid game context", game_id=game.game_id, component="context")

    def _load_prior(self, team_id: str, game: GameInfo) -> TeamPosterior:
        try:
            stored = self.posteriors.get_team_posterior(team_id)
        except PersistenceError:
            raise
        except OSError as exc:
            raise PersistenceError(str(exc), game_id=game.game_id, component="posterior_store") from exc
        if stored is not None:
            return self.updater.validate_posterior(stored)
        has_recent = self.games.has_recent_games(team_id, game.game_date)
        return self.updater.initialize(team_id, has_recent_games=has_recent, game_date=game.game_date)

    # ------------------------------------------------------------------
    # Persistence, checkpoints and rollback
    # ------------------------------------------------------------------

    def _with_persist_retry(self, operation: Callable[[], None], description: str,
                            game_id: Optional[str] = None) -> None:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.config.persist_retries + 1):
            try:
                operation()
                return
            except (PersistenceError, OSError) as exc:
                last_exc = exc
                logger.warning("%s failed (attempt %d/%d): %s", description, attempt,
                               self.config.persist_retries, exc)
                if attempt < self.config.persist_retries:
                    delay = backoff_delay_ms(attempt, self.config.retry_base_delay_ms,
                                             self.config.retry_max_delay_ms)
                    self._sleep(delay / 1000.0)
        raise PersistenceError(
            f"{description} failed after {self.config.persist_retries} attempts: {last_exc}",
            game_id=game_id,
            component="persistence",
        ) from last_exc

    def _persist(self, game: GameInfo, updates: List[Tuple[_TeamSide, TeamPosterior]]) -> None:
        saved: List[_TeamSide] = []
        try:
            for side, posterior in updates:
                self._with_persist_retry(
                    lambda: self.posteriors.save_team_posterior(side.team_id, posterior),
                    f"saving posterior for {side.team_id}",
                    game.game_id,
                )
                saved.append(side)
            self._with_persist_retry(
                lambda: self.games.mark_processed(game.game_id),
                f"marking game {game.game_id} processed",
                game.game_id,
            )
        except PersistenceError:
            for side in saved:
                try:
                    self.posteriors.save_team_posterior(side.team_id, side.prior)
                except (PersistenceError, OSError):
                    logger.exception("Could not restore prior posterior for %s", side.team_id)
            raise

    def _checkpoint(self) -> Dict:
        return {
            "encoder": self.encoder.snapshot(),
            "predictor": self.predictor.snapshot(),
            "trainer": self.trainer.snapshot(),
        }

    def _rollback(self, checkpoint: Dict) -> None:
        self.encoder.restore(checkpoint["encoder"])
        self.predictor.restore(checkpoint["predictor"])
        self.trainer.restore(checkpoint["trainer"])

    def _load_models(self) -> None:
        if self._models_loaded:
            return
        encoder_weights = self.models.load_model_weights(self.encoder.model_name)
        if encoder_weights:
            self.encoder.set_weights(encoder_weights)
        predictor_weights = self.models.load_model_weights(self.predictor.model_name)
        if predictor_weights:
            self.predictor.set_weights(predictor_weights)
        feedback_state = self.models.load_model_weights(FEEDBACK_STATE)
        if feedback_state:
            self.trainer.load_dict(feedback_state)
        self._models_loaded = True

    def save_models(self) -> bool:
        """Checkpoint encoder, predictor and feedback state. Returns False on failure."""
        try:
            self._with_persist_retry(
                lambda: self.models.save_model_weights(self.encoder.model_name, self.encoder.get_weights()),
                "saving encoder weights",
            )
            self._with_persist_retry(
                lambda: self.models.save_model_weights(self.predictor.model_name, self.predictor.get_weights()),
                "saving predictor weights",
            )
            self._with_persist_retry(
                lambda: self.models.save_model_weights(FEEDBACK_STATE, self.trainer.to_dict()),
                "saving feedback state",
            )
        except PersistenceError:
            self.checkpoint_failures += 1
            logger.exception("Model checkpoint failed")
            return False
        self._games_since_save = 0
        logger.info("Checkpointed models after %d successful games", self._successful_total)
        return True

    def _periodic_tasks(self) -> None:
        if self._successful_total % self.config.save_interval == 0:
            self.save_models()
        if self._successful_total % self.config.validation_interval == 0:
            self.run_validation()

    # ------------------------------------------------------------------
    # Validation, inference and stats
    # ------------------------------------------------------------------

    def run_validation(self) -> Optional[Dict]:
        """Evaluate the predictor on recent games without updating anything."""
        if not self._validation_buffer:
            return None
        ce_values = []
        kl_values = []
        hits = 0
        samples = 0
        for home_latent, away_latent, context_vector, home_actual, away_actual in self._validation_buffer:
            for latent, opponent, actual in ((home_latent, away_latent, home_actual),
                                             (away_latent, home_latent, away_actual)):
                predicted = self.predictor.predict(latent.mu, latent.sigma, opponent.mu, opponent.sigma,
                                                   context_vector)
                ce_values.append(self.predictor.loss(predicted, actual))
                kl_values.append(float(entropy(actual, np.clip(predicted, 1e-8, None))))
                hits += int(np.argmax(predicted) == np.argmax(actual))
                samples += 1
        result = {
            "games_processed": self._successful_total,
            "samples": samples,
            "mean_cross_entropy": float(np.mean(ce_values)),
            "mean_kl_divergence": float(np.mean(kl_values)),
            "top_event_accuracy": hits / samples,
        }
        self.validation_history.append(result)
        logger.info(
            "Validation after %d games: cross-entropy %.4f, top-event accuracy %.3f",
            result["games_processed"], result["mean_cross_entropy"], result["top_event_accuracy"],
        )
        return result

    def predict_game(self, home_team_id: str, away_team_id: str, game_context=None) -> np.ndarray:
        """
        Predict the home team's event distribution against the away team.

        Uses the stored posteriors; unknown teams get a fresh prior that is
        not persisted. Nothing is mutated.

        Args:
            home_team_id: Team whose events are predicted
            away_team_id: Opponent
            game_context: GameContext or a 10-dim context vector

        Returns:
            8 event probabilities
        """
        if game_context is None:
            context_vector = GameContext().to_vector()
        elif isinstance(game_context, GameContext):
            context_vector = game_context.to_vector()
        else:
            context_vector = np.asarray(game_context, dtype=np.float64)

        self._load_models()
        priors = []
        for team_id in (home_team_id, away_team_id):
            posterior = self.posteriors.get_team_posterior(team_id)
            priors.append(self.updater.validate_posterior(posterior) if posterior is not None
                          else self.updater.initialize(team_id))
        home, away = priors
        return self.predictor.predict(home.mu, home.sigma, away.mu, away.sigma, context_vector)

    def get_training_stats(self) -> Dict:
        return self.trainer.get_training_stats()

    def get_status(self) -> Dict:
        return {
            "state": self.state.value,
            "current_game_id": self.current_game_id,
            "successful_games": self._successful_total,
            "encoder_step": self.encoder.training_step,
            "predictor_step": self.predictor.training_step,
            "current_alpha": self.trainer.coordinator.current_alpha,
            "checkpoint_failures": self.checkpoint_failures,
            "validations": len(self.validation_history),
        }

    def generate_performance_report(self, **options) -> Dict:
        return self.monitor.generate_performance_report(**options)
