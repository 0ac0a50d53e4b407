"""calbridge: multi-account calendar coordination layer."""

__version__ = "0.1.0"
