"""
Burst-Merge Runner Package

Orchestration of a burst merge: state machine, worker pool, arena
accumulation, run events and logging setup.
"""

from .orchestrator import MergeOrchestrator, MergeResult, merge_burst

__all__ = ["MergeOrchestrator", "MergeResult", "merge_burst"]
