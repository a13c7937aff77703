"""Semantic Bridge: relays federation requests to a local LLM backend."""

__version__ = "0.1.0"
