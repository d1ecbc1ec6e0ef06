"""Conversation and message synchronization for the skill-swap marketplace."""

__version__ = "0.1.0"
