"""Neural components of the learning loop."""

from .contrastive import ContrastiveLatentEncoder, InfoNCELoss, NegativeSampler
from .event_predictor import EventPredictor, validate_probabilities
from .feedback import FeedbackTrainer, RepresentationFeedbackCoordinator
from .latent_encoder import LatentEncoder, VariationalAutoencoder, kl_divergence

__all__ = [
    "ContrastiveLatentEncoder",
    "EventPredictor",
    "FeedbackTrainer",
    "InfoNCELoss",
    "LatentEncoder",
    "NegativeSampler",
    "RepresentationFeedbackCoordinator",
    "VariationalAutoencoder",
    "kl_divergence",
    "validate_probabilities",
]
