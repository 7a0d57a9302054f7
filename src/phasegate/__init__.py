"""Phase-gated workflow enforcement."""

__version__ = "0.1.0"
