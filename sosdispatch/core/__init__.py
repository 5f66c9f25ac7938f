"""Configuration, identity, errors and shared policies."""
