"""
agentbridge — governance middleware for AI chat output.

Chat text in, parsed intents, rule verdicts, routed execution and an
audit trail out.
"""

from agentbridge.identity import __version__

__all__ = ["__version__"]
