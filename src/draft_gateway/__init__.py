"""Mutation gateway for agent-proposed workspace drafts."""

__version__ = "0.4.0"
