"""Background analysis job queue for training-session scorecards."""

__version__ = "0.1.0"
