"""Peerflow: template-driven progression engine for peer review and journal club activities."""

__version__ = "0.1.0"
