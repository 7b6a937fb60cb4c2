"""Retrieval-augmented question answering over course materials."""

__version__ = "0.1.0"
