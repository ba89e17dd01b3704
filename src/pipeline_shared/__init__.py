"""Shared models, protocols, constants, and utilities for the stage pipeline.

This package is the foundational layer for the ``stage_pipeline`` control
plane.  Nothing in here performs pipeline decisions; it only describes the
records the control plane passes around and how they are persisted.
"""

__version__ = "1.0.0"
