"""Turn source documents into an investor pitch deck."""

__version__ = "0.1.0"
