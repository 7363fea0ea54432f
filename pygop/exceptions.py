"""Exceptions raised by pygop."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid setup: missing dimension, empty input or inconsistent shapes.

    Raised eagerly at construction or at the start of a run and never
    recovered internally. Numerical failures (divergence, line-search
    exhaustion, infeasible relaxations) are reported as boolean results
    instead.
    """
