"""
Horus - clinical decision support for knee-movement sessions.

Turns per-session gait and range-of-motion metrics into validated,
evidence-backed clinical insights through a five-stage generative pipeline.
"""
__version__ = "1.0.0"
