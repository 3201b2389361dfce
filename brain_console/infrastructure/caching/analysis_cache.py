from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from brain_console.core.settings import settings
from brain_console.domain.schemas.analysis import EnhancementAnalysis

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CachedAnalysis:
    entity_id: str
    analysis: EnhancementAnalysis
    last_analyzed_at: Optional[str]
    fetched_at: float


class AnalysisCache:
    """Completion analyses keyed by entity id. Callers decide staleness."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = settings.ANALYSIS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: Dict[str, CachedAnalysis] = {}

    async def get(self, entity_id: str, force_refresh: bool = False) -> Optional[CachedAnalysis]:
        async with self._lock:
            if force_refresh:
                self._entries.pop(entity_id, None)
                return None
            entry = self._entries.get(entity_id)
            if entry is None:
                return None
            if self._ttl_seconds and self.is_stale(entry, self._ttl_seconds):
                self._entries.pop(entity_id, None)
                logger.debug("analysis_cache_expired", entity_id=entity_id)
                return None
            return entry

    async def put(
        self,
        entity_id: str,
        analysis: EnhancementAnalysis,
        last_analyzed_at: Optional[str] = None,
    ) -> CachedAnalysis:
        entry = CachedAnalysis(
            entity_id=entity_id,
            analysis=analysis,
            last_analyzed_at=last_analyzed_at,
            fetched_at=self._clock(),
        )
        async with self._lock:
            self._entries[entity_id] = entry
        return entry

    async def invalidate(self, entity_id: str) -> None:
        async with self._lock:
            self._entries.pop(entity_id, None)

    def is_stale(self, entry: CachedAnalysis, max_age_seconds: float) -> bool:
        return self._clock() - entry.fetched_at > max_age_seconds
