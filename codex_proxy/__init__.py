"""Anthropic Messages API proxy backed by a Codex OAuth login."""

__version__ = "0.1.0"
