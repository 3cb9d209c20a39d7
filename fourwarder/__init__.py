"""Fourwarder: a Matrix relay with a reaction-based moderation gate."""

__version__ = "0.2.0"
