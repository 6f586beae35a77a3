"""Meera AI: voice and text chat with a hosted language model."""

__version__ = "0.1.0"
