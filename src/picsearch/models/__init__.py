"""Embedding models and data schemas."""
