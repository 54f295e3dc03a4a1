"""Kalai: conversation and feedback pipeline for an in-editor AI assistant."""

__all__ = ["__version__"]

__version__ = "0.3.0"
