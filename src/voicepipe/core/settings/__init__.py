"""Persistent settings, history and developer configuration."""
