import asyncio

from brain_console.domain.schemas.analysis import EnhancementAnalysis
from brain_console.infrastructure.caching.analysis_cache import AnalysisCache


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_force_refresh_drops_the_entry() -> None:
    cache = AnalysisCache(ttl_seconds=0)
    analysis = EnhancementAnalysis()

    async def _run() -> None:
        await cache.put("brain-1", analysis, "2026-10-01T12:00:00Z")
        hit = await cache.get("brain-1")
        assert hit is not None and hit.analysis is analysis
        assert await cache.get("brain-1", force_refresh=True) is None
        assert await cache.get("brain-1") is None

    asyncio.run(_run())


def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = AnalysisCache(ttl_seconds=60, clock=clock)

    async def _run() -> None:
        await cache.put("brain-1", EnhancementAnalysis())
        clock.now += 59
        assert await cache.get("brain-1") is not None
        clock.now += 2
        assert await cache.get("brain-1") is None

    asyncio.run(_run())


def test_zero_ttl_never_expires_on_age() -> None:
    clock = _Clock()
    cache = AnalysisCache(ttl_seconds=0, clock=clock)

    async def _run() -> None:
        await cache.put("brain-1", EnhancementAnalysis())
        clock.now += 86400
        assert await cache.get("brain-1") is not None
        await cache.invalidate("brain-1")
        assert await cache.get("brain-1") is None

    asyncio.run(_run())
