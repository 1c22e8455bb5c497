"""Streaming progress delivery."""

from .progress import ProgressStream, Subscription, session_analytics

__all__ = ["ProgressStream", "Subscription", "session_analytics"]
