"""
quorum - Experiment lifecycle orchestration.

Drive hypotheses through build, doubt, verify and merge with worker agents.
"""

from quorum.machine import ExperimentStatus, determine_next_step, transition

__version__ = "0.1.0"
__all__ = ["ExperimentStatus", "determine_next_step", "transition", "__version__"]
