"""ProjLink: dual-transport remote control for paired projectors."""

__version__ = "0.3.0"
