"""Regulatory truth layer: lifecycle, conflict resolution, provenance, releases and the reference graph."""

__version__ = "0.1.0"
