"""
Services package
"""
# 持久化对话记录（Redis，降级到内存）
from .history_store import HistoryStore, notes_key

# 分段输出与分段缓存
from .segment_service import (
    SegmentCache, SegmentService, CachedSegment, Segment,
    split_into_segments, build_compact_dashboard
)

__all__ = [
    "HistoryStore",
    "notes_key",
    "SegmentCache",
    "SegmentService",
    "CachedSegment",
    "Segment",
    "split_into_segments",
    "build_compact_dashboard",
]
