"""
Context Evolution

Feedback-driven and time-driven confidence updates.
"""

from .engine import ContextEvolutionEngine, EvolutionResult, EvolutionStats, feedback_signal

__all__ = [
    "ContextEvolutionEngine",
    "EvolutionResult",
    "EvolutionStats",
    "feedback_signal",
]
