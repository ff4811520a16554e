"""Contact memory: fact extraction and merge policy."""

from .extractor import FactDiff, FactExtractor, TrackedChange
from .manager import ExtractionPass, MemoryManager
from .merge import merge_fact_diff

__all__ = [
    "ExtractionPass",
    "FactDiff",
    "FactExtractor",
    "MemoryManager",
    "TrackedChange",
    "merge_fact_diff",
]
