"""Error taxonomy for the online learning loop and numeric guards."""

import math
from typing import Optional, Sequence

import numpy as np
import torch


class CourtVAEError(Exception):
    """Base class for all errors raised by courtvae."""

    def __init__(self, message: str, game_id: Optional[str] = None, component: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.game_id = game_id
        self.component = component

    def __str__(self) -> str:
        parts = []
        if self.component:
            parts.append(f"[{self.component}]")
        if self.game_id:
            parts.append(f"game {self.game_id}:")
        parts.append(self.message)
        return " ".join(parts)


class DataError(CourtVAEError, ValueError):
    """Raised when feature or ground-truth data for a game is missing or malformed."""


class NumericInstabilityError(CourtVAEError, ArithmeticError):
    """Raised when a loss or gradient is NaN or infinite."""


class ConcurrencyError(CourtVAEError, RuntimeError):
    """Raised when a run is started while another is in progress."""


class PersistenceError(CourtVAEError, IOError):
    """Raised when a storage collaborator fails to load or save state."""


class ConfigurationError(CourtVAEError, ValueError):
    """Raised when a configuration value is out of its valid range."""


def sanitize(value, component: str = "loss", game_id: Optional[str] = None) -> float:
    """
    Convert a scalar loss to float and reject non-finite values.

    Args:
        value: Python number, numpy scalar, or 0-d tensor
        component: Name of the computation producing the value
        game_id: Game being processed, if any

    Returns:
        The value as a float

    Raises:
        NumericInstabilityError: If the value is NaN or infinite
    """
    if isinstance(value, torch.Tensor):
        value = value.detach().cpu().item()
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise NumericInstabilityError(
            f"non-numeric value {value!r}", game_id=game_id, component=component
        ) from exc
    if not math.isfinite(result):
        raise NumericInstabilityError(
            f"non-finite value {result}", game_id=game_id, component=component
        )
    return result


def sanitize_array(values: Sequence[float], component: str = "vector", game_id: Optional[str] = None) -> np.ndarray:
    """Vector form of :func:`sanitize`."""
    if isinstance(values, torch.Tensor):
        values = values.detach().cpu().numpy()
    arr = np.asarray(values, dtype=np.float64)
    if not np.all(np.isfinite(arr)):
        raise NumericInstabilityError(
            f"{int(np.sum(~np.isfinite(arr)))} non-finite entries", game_id=game_id, component=component
        )
    return arr
