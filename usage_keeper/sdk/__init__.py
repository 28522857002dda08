"""
SDK for usage keeper.

Provides the host-facing usage plugins and client integrations.
"""

from .openai_client import RecordingOpenAI
from .sqlite_plugin import SQLitePlugin

__all__ = ["RecordingOpenAI", "SQLitePlugin"]
