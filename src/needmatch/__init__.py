"""needmatch: relevance matching and throttled notifications."""

__version__ = "0.1.0"
