"""
Storage layer for usage keeper.

SQLite persistence of usage records and the snapshot data model.
"""
