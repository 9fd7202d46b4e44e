"""Core types, exceptions and model capabilities."""
