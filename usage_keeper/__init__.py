"""
Usage Keeper.

Durable, restart-resilient usage accounting for LLM proxies backed by a
local SQLite database.
"""

__version__ = "0.1.0"
