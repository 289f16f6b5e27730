"""Durable task scheduling, dispatch, and execution on SQLite."""

__version__ = "0.1.0"
