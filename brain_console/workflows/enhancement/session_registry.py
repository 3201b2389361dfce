import asyncio
from typing import Callable, Dict, Optional

import structlog

from brain_console.infrastructure.caching.analysis_cache import AnalysisCache
from brain_console.infrastructure.http.backend_gateway import BackendGateway
from brain_console.infrastructure.observability.context_vars import bind_session_context, clear_session_context
from brain_console.infrastructure.storage.upload_pipeline import FileUploadPipeline
from brain_console.workflows.enhancement.orchestrator import EnhancementOrchestrator

logger = structlog.get_logger(__name__)

OrchestratorFactory = Callable[[str], EnhancementOrchestrator]


class EnhancementSessionRegistry:
    """
    One orchestrator per entity. Opening an entity that already has a live
    session hands back that session instead of starting a second one.
    """

    def __init__(self, factory: OrchestratorFactory):
        self._factory = factory
        self._sessions: Dict[str, EnhancementOrchestrator] = {}
        self._sessions_lock = asyncio.Lock()

    @classmethod
    def for_gateway(cls, gateway: BackendGateway, cache: Optional[AnalysisCache] = None) -> "EnhancementSessionRegistry":
        shared_cache = cache or AnalysisCache()
        uploader = FileUploadPipeline(gateway)
        return cls(lambda entity_id: EnhancementOrchestrator(entity_id, gateway, uploader, cache=shared_cache))

    async def acquire(self, entity_id: str) -> EnhancementOrchestrator:
        async with self._sessions_lock:
            session = self._sessions.get(entity_id)
            if session is None:
                session = self._factory(entity_id)
                self._sessions[entity_id] = session
                logger.debug("enhancement_session_created", entity_id=entity_id, session_id=session.session_id)
            return session

    async def open(self, entity_id: str, force_refresh: bool = False) -> EnhancementOrchestrator:
        session = await self.acquire(entity_id)
        bind_session_context(entity_id=entity_id, session_id=session.session_id)
        try:
            await session.open(force_refresh=force_refresh)
        finally:
            clear_session_context()
        return session

    def get(self, entity_id: str) -> Optional[EnhancementOrchestrator]:
        return self._sessions.get(entity_id)

    async def close(self, entity_id: str) -> None:
        """Cancel and forget the entity's session. Raises if a save is underway."""
        async with self._sessions_lock:
            session = self._sessions.get(entity_id)
            if session is None:
                return
            session.cancel()
            self._sessions.pop(entity_id, None)
            logger.debug("enhancement_session_closed", entity_id=entity_id, session_id=session.session_id)

    def active_count(self) -> int:
        return len(self._sessions)
