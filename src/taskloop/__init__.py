"""taskloop: autonomous AI build loop with task scheduling and lock-file supervision."""

__version__ = "0.1.0"
