"""Approval-gated tool invocation service for conversational agents."""

__version__ = "0.1.0"
