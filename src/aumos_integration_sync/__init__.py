"""AumOS integration sync and control-verification engine."""

__version__ = "0.1.0"
