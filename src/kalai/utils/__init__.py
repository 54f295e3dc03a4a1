"""Utility helpers shared across Kalai modules."""
