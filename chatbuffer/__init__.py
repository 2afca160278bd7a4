"""Message buffering and retry-processing pipeline for chat platforms."""

from .__version__ import __version__

__all__ = ["__version__"]
