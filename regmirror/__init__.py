"""Package registry mirror with a replayable synchronization engine."""

__version__ = "0.1.0"
