"""
digest_batch.stages -- the three pipeline stages.

    FactExtractor   map     one RawRecord -> Fact | failure
    GroupingEngine  shuffle (group_key, Fact) -> FactGroup
    GroupAggregator reduce  FactGroup -> GroupSummary -> one notification
"""

from digest_batch.stages.aggregator import GroupAggregator
from digest_batch.stages.extractor import FactExtractor
from digest_batch.stages.grouping import GroupingEngine

__all__ = [
    "FactExtractor",
    "GroupAggregator",
    "GroupingEngine",
]
