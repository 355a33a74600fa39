"""Feature conversion and storage collaborators."""

from .features import (
    EVENT_DIM,
    EVENT_LABELS,
    FEATURE_DIM,
    FEATURE_NAMES,
    features_to_vector,
    transition_probabilities,
    validate_event_probabilities,
)
from .repository import (
    FeatureExtractor,
    GameSource,
    InMemoryRepository,
    JsonFileRepository,
    ModelStore,
    PosteriorStore,
)

__all__ = [
    "EVENT_DIM",
    "EVENT_LABELS",
    "FEATURE_DIM",
    "FEATURE_NAMES",
    "FeatureExtractor",
    "GameSource",
    "InMemoryRepository",
    "JsonFileRepository",
    "ModelStore",
    "PosteriorStore",
    "features_to_vector",
    "transition_probabilities",
    "validate_event_probabilities",
]
