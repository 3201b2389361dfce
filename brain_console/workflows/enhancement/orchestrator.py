from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

import structlog
from pydantic import ValidationError

from brain_console.domain.edit_state import EditState, prefill_edit_state
from brain_console.domain.exceptions import (
    BrainConsoleError,
    EnhancementWorkflowError,
    InvalidTransitionError,
    SessionBusyError,
    StreamJobError,
)
from brain_console.domain.schemas.analysis import BusinessProfileCards, EnhancementAnalysis
from brain_console.domain.schemas.uploads import EntitySnapshot, PendingFile, UploadPolicy
from brain_console.domain.services.completion_scorer import CompletionScore, score_completion
from brain_console.infrastructure.caching.analysis_cache import AnalysisCache, CachedAnalysis
from brain_console.infrastructure.observability.logger_config import compact_error
from brain_console.workflows.enhancement.contracts import EnhancementBackendProtocol, FileUploaderProtocol
from brain_console.workflows.enhancement.state import (
    LOCKED_STAGES,
    SessionState,
    WorkflowFailure,
    WorkflowStage,
    acknowledge,
    transition,
)

logger = structlog.get_logger(__name__)

StageListener = Callable[[WorkflowStage], None]

_EDITABLE_STAGES = frozenset(
    {WorkflowStage.AWAITING_USER_INPUT, WorkflowStage.ANALYZING, WorkflowStage.ERROR}
)


@dataclass(frozen=True)
class SaveResult:
    score: CompletionScore
    analysis: EnhancementAnalysis
    entity: EntitySnapshot
    cards: Optional[BusinessProfileCards]
    synthesis_failed: bool = False


def _describe(exc: BaseException) -> str:
    if isinstance(exc, StreamJobError):
        return exc.user_message
    if isinstance(exc, BrainConsoleError):
        return exc.message
    if isinstance(exc, ValidationError):
        return "The backend returned data in an unexpected format"
    if isinstance(exc, asyncio.CancelledError):
        return "The operation was cancelled"
    return compact_error(exc) or type(exc).__name__


class EnhancementOrchestrator:
    """
    Drives one entity's enhancement session through its stages.

    The session owns a single EditState. `save()` runs persist -> regenerate
    -> synthesize -> rescore strictly in order; the public stage is updated
    before each stage's network call. A fatal failure parks the session in
    Error with the user's edits untouched; synthesis failures are logged and
    skipped.
    """

    def __init__(
        self,
        entity_id: str,
        backend: EnhancementBackendProtocol,
        uploader: FileUploaderProtocol,
        cache: Optional[AnalysisCache] = None,
        entity: Optional[EntitySnapshot] = None,
        listeners: Optional[Sequence[StageListener]] = None,
    ):
        self.entity_id = entity_id
        self.session_id = uuid4().hex
        self.backend = backend
        self.uploader = uploader
        self.cache = cache or AnalysisCache()
        self.entity = entity
        self.listeners: List[StageListener] = list(listeners or [])

        self.state = SessionState()
        self.edit_state = EditState()
        self.analysis: Optional[EnhancementAnalysis] = None
        self.last_analyzed_at: Optional[str] = None
        self.cards: Optional[BusinessProfileCards] = None
        self.score: Optional[CompletionScore] = None

        self._open_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self._log = logger.bind(entity_id=entity_id, session_id=self.session_id)

    # --- observation -----------------------------------------------------------

    @property
    def stage(self) -> WorkflowStage:
        return self.state.stage

    @property
    def current_stage_label(self) -> str:
        return self.state.display_label

    @property
    def failure(self) -> Optional[WorkflowFailure]:
        return self.state.failure

    @property
    def is_busy(self) -> bool:
        """True while a save is running."""
        return self.state.stage in LOCKED_STAGES

    def subscribe(self, listener: StageListener) -> None:
        self.listeners.append(listener)

    # --- opening ---------------------------------------------------------------------

    async def open(self, force_refresh: bool = False) -> EnhancementAnalysis:
        """
        Load the completion analysis and seed the edit state.

        A concurrent call while an analysis is in flight awaits that same
        analysis. Re-opening an already open session without a forced refresh,
        or while a save is running or parked in Error, returns the current
        analysis untouched.
        """
        if self._open_task is not None and not self._open_task.done():
            return await asyncio.shield(self._open_task)

        if self.state.stage is WorkflowStage.AWAITING_USER_INPUT and not force_refresh and self.analysis:
            return self.analysis
        if (self.is_busy or self.state.stage is WorkflowStage.ERROR) and self.analysis is not None:
            self._log.debug("open_joined_existing_session", stage=self.state.stage.value)
            return self.analysis
        if self.state.stage not in (WorkflowStage.IDLE, WorkflowStage.AWAITING_USER_INPUT):
            raise InvalidTransitionError(self.state.stage, WorkflowStage.ANALYZING)

        self._open_task = asyncio.ensure_future(self._analyze(force_refresh))
        return await asyncio.shield(self._open_task)

    async def _analyze(self, force_refresh: bool) -> EnhancementAnalysis:
        self._enter(WorkflowStage.ANALYZING)
        try:
            entry = await self._load_analysis(force_refresh)
            if self.entity is None:
                self.entity = await self.backend.fetch_entity(self.entity_id)
            prefill_edit_state(
                self.edit_state,
                entry.analysis,
                self.entity,
                exclude_fields=entry.analysis.strategic_target_fields(),
            )
        except asyncio.CancelledError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            raise self._fail(exc) from exc

        self.analysis = entry.analysis
        self.last_analyzed_at = entry.last_analyzed_at
        self.score = score_completion(entry.analysis, self.edit_state)
        self._enter(WorkflowStage.AWAITING_USER_INPUT)
        self._log.info("enhancement_opened", overall=self.score.overall, force_refresh=force_refresh)
        return entry.analysis

    async def _load_analysis(self, force_refresh: bool) -> CachedAnalysis:
        cached = await self.cache.get(self.entity_id, force_refresh=force_refresh)
        if cached is not None:
            self._log.debug("analysis_cache_hit")
            return cached
        envelope = await self.backend.fetch_completion_analysis(self.entity_id, force_refresh=force_refresh)
        return await self.cache.put(self.entity_id, envelope.analysis, envelope.last_analyzed_at)

    # --- editing ---------------------------------------------------------------------

    def set_answer(self, field_id: str, value: str) -> None:
        self._require_editable()
        self.edit_state.set_text(field_id, value)

    def queue_files(self, field_id: str, files: Iterable[PendingFile]) -> None:
        self._require_editable()
        self.edit_state.queue_files(field_id, files)

    def remove_file(self, field_id: str, handle_id: str) -> bool:
        self._require_editable()
        return self.edit_state.remove_file(field_id, handle_id)

    def current_score(self) -> CompletionScore:
        if self.analysis is None:
            raise InvalidTransitionError(self.state.stage, WorkflowStage.AWAITING_USER_INPUT)
        return score_completion(self.analysis, self.edit_state)

    def _require_editable(self) -> None:
        if self.state.stage not in _EDITABLE_STAGES or self.analysis is None:
            raise SessionBusyError(f"Answers cannot be edited while {self.state.stage.value}")

    # --- saving -------------------------------------------------------------------------

    async def save(self) -> SaveResult:
        if self._save_lock.locked():
            raise SessionBusyError("A save is already in progress for this session")
        async with self._save_lock:
            if self.state.stage is not WorkflowStage.AWAITING_USER_INPUT or self.analysis is None:
                raise InvalidTransitionError(self.state.stage, WorkflowStage.PERSISTING)
            return await self._run_pipeline(self.analysis)

    async def _run_pipeline(self, analysis: EnhancementAnalysis) -> SaveResult:
        try:
            self._enter(WorkflowStage.PERSISTING)
            await self._persist(analysis)
            await self.cache.invalidate(self.entity_id)

            self._enter(WorkflowStage.REGENERATING)
            cards = await self.backend.regenerate_artifacts(self.entity_id)

            self._enter(WorkflowStage.SYNTHESIZING)
            synthesis_failed = not await self._synthesize()

            self._enter(WorkflowStage.RESCORING)
            envelope = await self.backend.fetch_completion_analysis(self.entity_id, force_refresh=True)
            await self.cache.put(self.entity_id, envelope.analysis, envelope.last_analyzed_at)
            entity = await self.backend.fetch_entity(self.entity_id)
            server_state = prefill_edit_state(EditState(), envelope.analysis, entity)
            score = score_completion(envelope.analysis, server_state)
        except asyncio.CancelledError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            raise self._fail(exc) from exc

        self.analysis = envelope.analysis
        self.last_analyzed_at = envelope.last_analyzed_at
        self.entity = entity
        self.cards = cards or self.cards
        self.score = score
        self.edit_state.clear()
        self._enter(WorkflowStage.IDLE)
        self._log.info("enhancement_saved", overall=score.overall, synthesis_failed=synthesis_failed)
        return SaveResult(
            score=score,
            analysis=envelope.analysis,
            entity=entity,
            cards=cards,
            synthesis_failed=synthesis_failed,
        )

    async def _persist(self, analysis: EnhancementAnalysis) -> None:
        policies: Dict[str, UploadPolicy] = {
            descriptor.fieldId: self.uploader.policy_for(descriptor)
            for descriptor in analysis.quick_win_fields()
            if descriptor.kind == "file"
        }
        batch = self.edit_state.queued_batch()
        uploaded = await self.uploader.upload_batch(batch, policies)
        text_answers = self.edit_state.text_updates()
        self._log.info("persisting_answers", answers=len(text_answers), files=sum(len(v) for v in uploaded.values()))
        await self.backend.persist_answers(self.entity_id, text_answers, uploaded)

    async def _synthesize(self) -> bool:
        try:
            await self.backend.synthesize_knowledge(self.entity_id)
            return True
        except (BrainConsoleError, ValidationError) as exc:
            self._log.warning("synthesis_step_failed", error=compact_error(exc))
            return False

    # --- error handling and closing ----------------------------------------------------

    def acknowledge_error(self) -> WorkflowStage:
        self.state = acknowledge(self.state)
        if self.state.stage is WorkflowStage.IDLE:
            self.edit_state.clear()
        self._notify()
        return self.state.stage

    def cancel(self) -> None:
        """Close the session and drop unsaved edits. Refused once saving has started."""
        if not self.state.can_close:
            raise InvalidTransitionError(self.state.stage, WorkflowStage.IDLE)
        if self.state.stage is WorkflowStage.IDLE:
            self.edit_state.clear()
            return
        self.state = transition(self.state, WorkflowStage.IDLE)
        self.edit_state.clear()
        self._log.info("enhancement_cancelled")
        self._notify()

    def _enter(self, stage: WorkflowStage) -> None:
        self.state = transition(self.state, stage)
        self._log.info("stage_entered", stage=stage.value)
        self._notify()

    def _fail(self, exc: BaseException) -> EnhancementWorkflowError:
        failed_stage = self.state.stage
        message = _describe(exc)
        self.state = transition(self.state, WorkflowStage.ERROR, failure=WorkflowFailure(failed_stage, message))
        self._log.error("stage_failed", stage=failed_stage.value, error=compact_error(message), error_type=type(exc).__name__)
        self._notify()
        return EnhancementWorkflowError(failed_stage, message, cause=exc)

    def _notify(self) -> None:
        for listener in self.listeners:
            listener(self.state.stage)
