"""
Core modules for usage keeper.

This package contains usage events and the plugin capability, the
snapshot merge algorithm and the in-memory statistics aggregate.
"""
