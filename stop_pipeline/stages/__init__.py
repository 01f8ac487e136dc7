"""
Pipeline stages.

- ReconciliationStage: decides each row's coordinate and status
- GroupingEngine: collapses reconciled rows into unique stops
"""

from .base_stage import BaseStage, StageResult, StageStatistics
from .grouping import GroupingEngine, GroupingResult
from .reconciliation import ReconciliationStage

__all__ = [
    "BaseStage",
    "StageResult",
    "StageStatistics",
    "GroupingEngine",
    "GroupingResult",
    "ReconciliationStage",
]
