"""Configuration for usage keeper."""
