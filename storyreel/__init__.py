"""storyreel: narrated story videos from a text prompt."""

__version__ = "0.3.0"
