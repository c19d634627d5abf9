"""Adapters between external care subsystems and the pipeline core."""
