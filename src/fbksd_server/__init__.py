"""Benchmark coordination server for rendering-technique research."""

__version__ = "0.3.0"
