"""OneClickTag tracking batch service."""

__version__ = "0.1.0"
