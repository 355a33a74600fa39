"""Online learning of team playing-style latents from game box scores."""

__version__ = "0.1.0"
