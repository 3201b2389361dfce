import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest

from brain_console.domain.exceptions import (
    BackendRequestError,
    BackendUnavailableError,
    EnhancementWorkflowError,
    InvalidTransitionError,
    PartialUploadError,
    SessionBusyError,
)
from brain_console.domain.schemas.analysis import BusinessProfileCards, EnhancementAnalysis
from brain_console.domain.schemas.uploads import EntitySnapshot, PendingFile, UploadAuthorization
from brain_console.infrastructure.caching.analysis_cache import AnalysisCache
from brain_console.infrastructure.http.backend_gateway import AnalysisEnvelope
from brain_console.infrastructure.storage.upload_pipeline import FileUploadPipeline
from brain_console.workflows.enhancement.orchestrator import EnhancementOrchestrator
from brain_console.workflows.enhancement.session_registry import EnhancementSessionRegistry
from brain_console.workflows.enhancement.state import WorkflowStage


ANALYSIS: Dict[str, Any] = {
    "cardAnalysis": [
        {
            "cardId": "brand",
            "cardTitle": "Brand Voice",
            "missingContexts": [
                {"fieldId": "mission", "fieldType": "textarea"},
                {"fieldId": "tagline", "fieldType": "text"},
                {"fieldId": "logo", "fieldType": "file", "accept": "image/*"},
            ],
            "refinementQuestions": [{"id": "q-tone", "question": "Describe your tone"}],
            "strategicRecommendations": [{"recommendation": "Rewrite the mission", "targetField": "mission"}],
        }
    ]
}

ENTITY: Dict[str, Any] = {
    "intakeData": {"mission": "Old mission", "tagline": "Saved tagline"},
    "fileUploads": [],
}


class _FakeBackend:
    """Records every call together with the orchestrator stage observed at call time."""

    def __init__(self, analysis: Dict[str, Any] = ANALYSIS, entity: Dict[str, Any] = ENTITY):
        self.analysis = analysis
        self.entity = copy.deepcopy(entity)
        self.orchestrator: Optional[EnhancementOrchestrator] = None
        self.calls: List[tuple[str, Optional[WorkflowStage]]] = []
        self.persisted: List[Dict[str, Any]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.analysis_gate: Optional[asyncio.Event] = None
        self.regenerate_gate: Optional[asyncio.Event] = None

    def fail_next(self, method: str, exc: Exception) -> None:
        self.failures.setdefault(method, []).append(exc)

    def _record(self, method: str) -> None:
        stage = self.orchestrator.stage if self.orchestrator else None
        self.calls.append((method, stage))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def fetch_completion_analysis(self, entity_id: str, force_refresh: bool = False) -> AnalysisEnvelope:
        if self.analysis_gate is not None:
            await self.analysis_gate.wait()
        self._record("fetch_completion_analysis")
        return AnalysisEnvelope(EnhancementAnalysis.model_validate(self.analysis), "2026-10-01T12:00:00Z")

    async def fetch_entity(self, entity_id: str) -> EntitySnapshot:
        self._record("fetch_entity")
        return EntitySnapshot.model_validate({"id": entity_id, **self.entity})

    async def persist_answers(self, entity_id, text_answers, uploaded_files) -> Dict[str, Any]:
        self._record("persist_answers")
        self.persisted.append(
            {
                "text": dict(text_answers),
                "files": {field: [ref.to_wire() for ref in refs] for field, refs in uploaded_files.items()},
            }
        )
        self.entity["intakeData"] = {**self.entity["intakeData"], **text_answers}
        for field, refs in uploaded_files.items():
            self.entity["fileUploads"].extend({**ref.to_wire(), "field": field} for ref in refs)
        return {"success": True}

    async def regenerate_artifacts(self, entity_id: str) -> Optional[BusinessProfileCards]:
        self._record("regenerate_artifacts")
        if self.regenerate_gate is not None:
            await self.regenerate_gate.wait()
        return BusinessProfileCards.model_validate({"cards": [{"id": "brand", "title": "Brand Voice"}]})

    async def synthesize_knowledge(self, entity_id: str) -> Dict[str, Any]:
        self._record("synthesize_knowledge")
        return {"success": True}

    # Upload side, used through FileUploadPipeline.

    async def request_upload_authorization(self, *, file_name, mime_type, field_id, max_size, allowed_mime_types=()):
        self._record("request_upload_authorization")
        return UploadAuthorization(
            authorizedUrl=f"https://storage.test/put/{file_name}",
            fileUrl=f"https://cdn.test/{file_name}",
            storageKey=f"{field_id}/{file_name}",
        )

    async def put_object(self, authorized_url: str, content: bytes, mime_type: str) -> None:
        self._record(f"put_object:{authorized_url.rsplit('/', 1)[-1]}")


def _orchestrator(backend: _FakeBackend, **kwargs: Any) -> tuple[EnhancementOrchestrator, List[WorkflowStage]]:
    seen: List[WorkflowStage] = []
    orchestrator = EnhancementOrchestrator(
        "brain-1",
        backend,
        FileUploadPipeline(backend, max_parallel=2, default_max_size=1024),
        listeners=[seen.append],
        **kwargs,
    )
    backend.orchestrator = orchestrator
    return orchestrator, seen


def test_open_prefills_everything_except_strategic_targets() -> None:
    backend = _FakeBackend()
    orchestrator, seen = _orchestrator(backend)

    asyncio.run(orchestrator.open())

    assert seen == [WorkflowStage.ANALYZING, WorkflowStage.AWAITING_USER_INPUT]
    assert orchestrator.edit_state.text("mission") == ""
    assert orchestrator.edit_state.text("tagline") == "Saved tagline"
    assert orchestrator.score.per_category["quick_wins"].missing == ["mission", "logo"]
    assert backend.calls == [
        ("fetch_completion_analysis", WorkflowStage.ANALYZING),
        ("fetch_entity", WorkflowStage.ANALYZING),
    ]


def test_save_runs_stages_in_order_and_announces_each_before_its_call() -> None:
    backend = _FakeBackend()
    orchestrator, seen = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        seen.clear()
        backend.calls.clear()
        orchestrator.set_answer("mission", "Make hiring painless")
        orchestrator.set_answer("q-tone", "Warm")
        orchestrator.queue_files("logo", [PendingFile(name="logo.png", content=b"\x89PNG")])
        return await orchestrator.save()

    result = asyncio.run(_run())

    assert seen == [
        WorkflowStage.PERSISTING,
        WorkflowStage.REGENERATING,
        WorkflowStage.SYNTHESIZING,
        WorkflowStage.RESCORING,
        WorkflowStage.IDLE,
    ]
    assert backend.calls == [
        ("request_upload_authorization", WorkflowStage.PERSISTING),
        ("put_object:logo.png", WorkflowStage.PERSISTING),
        ("persist_answers", WorkflowStage.PERSISTING),
        ("regenerate_artifacts", WorkflowStage.REGENERATING),
        ("synthesize_knowledge", WorkflowStage.SYNTHESIZING),
        ("fetch_completion_analysis", WorkflowStage.RESCORING),
        ("fetch_entity", WorkflowStage.RESCORING),
    ]
    [persisted] = backend.persisted
    assert persisted["text"]["mission"] == "Make hiring painless"
    assert persisted["files"] == {
        "logo": [{"url": "https://cdn.test/logo.png", "name": "logo.png", "key": "logo/logo.png", "type": "image/png"}]
    }
    assert result.synthesis_failed is False
    assert result.cards.cards[0].id == "brand"
    # Rescored from server truth: the strategic target was saved, so it counts now.
    assert result.score.per_category["quick_wins"].missing == []
    assert result.score.overall == 100
    assert orchestrator.stage is WorkflowStage.IDLE
    assert orchestrator.edit_state.text_answers == {}


def test_synthesis_failure_does_not_stop_the_save() -> None:
    backend = _FakeBackend()
    backend.fail_next("synthesize_knowledge", BackendRequestError(status=502, code="BACKEND_ERROR", message="down"))
    orchestrator, _ = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        return await orchestrator.save()

    result = asyncio.run(_run())

    assert result.synthesis_failed is True
    assert orchestrator.stage is WorkflowStage.IDLE
    assert backend.names()[-1] == "fetch_entity"


def test_regeneration_failure_keeps_edits_and_retry_succeeds() -> None:
    backend = _FakeBackend()
    backend.fail_next("regenerate_artifacts", BackendUnavailableError("generator timed out"))
    orchestrator, seen = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        orchestrator.set_answer("mission", "Make hiring painless")

        with pytest.raises(EnhancementWorkflowError) as exc_info:
            await orchestrator.save()

        assert exc_info.value.stage is WorkflowStage.REGENERATING
        assert orchestrator.stage is WorkflowStage.ERROR
        assert orchestrator.failure.message == "generator timed out"
        assert orchestrator.current_stage_label == "Regenerating cards..."
        assert orchestrator.edit_state.text("mission") == "Make hiring painless"

        assert orchestrator.acknowledge_error() is WorkflowStage.AWAITING_USER_INPUT
        return await orchestrator.save()

    result = asyncio.run(_run())

    first, second = backend.persisted
    assert first == second
    assert result.synthesis_failed is False
    assert orchestrator.stage is WorkflowStage.IDLE
    assert seen.count(WorkflowStage.ERROR) == 1


def test_failed_upload_never_reaches_persist() -> None:
    backend = _FakeBackend()
    orchestrator, _ = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        orchestrator.queue_files("logo", [PendingFile(name="notes.txt", content=b"plain text")])
        with pytest.raises(EnhancementWorkflowError) as exc_info:
            await orchestrator.save()
        return exc_info.value

    error = asyncio.run(_run())

    assert isinstance(error.cause, PartialUploadError)
    assert error.stage is WorkflowStage.PERSISTING
    assert "persist_answers" not in backend.names()
    assert orchestrator.edit_state.files("logo")[0].name == "notes.txt"


def test_cancel_clears_edits_without_backend_calls() -> None:
    backend = _FakeBackend()
    orchestrator, _ = _orchestrator(backend)
    asyncio.run(orchestrator.open())
    backend.calls.clear()
    orchestrator.set_answer("mission", "draft")

    orchestrator.cancel()

    assert orchestrator.stage is WorkflowStage.IDLE
    assert orchestrator.edit_state.text_answers == {}
    assert backend.calls == []


def test_cancel_and_second_save_are_refused_while_persisting() -> None:
    backend = _FakeBackend()
    orchestrator, _ = _orchestrator(backend)
    gate = asyncio.Event()
    real_put = backend.put_object

    async def _slow_put(authorized_url: str, content: bytes, mime_type: str) -> None:
        await gate.wait()
        await real_put(authorized_url, content, mime_type)

    backend.put_object = _slow_put  # type: ignore[method-assign]

    async def _run():
        await orchestrator.open()
        orchestrator.queue_files("logo", [PendingFile(name="logo.png", content=b"\x89PNG")])
        save_task = asyncio.create_task(orchestrator.save())
        while orchestrator.stage is not WorkflowStage.PERSISTING:
            await asyncio.sleep(0)

        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel()
        with pytest.raises(SessionBusyError):
            await orchestrator.save()
        with pytest.raises(SessionBusyError):
            orchestrator.set_answer("tagline", "late edit")

        gate.set()
        return await save_task

    result = asyncio.run(_run())

    assert result.score.per_category["quick_wins"].missing == []
    assert orchestrator.stage is WorkflowStage.IDLE


def test_save_before_open_is_rejected() -> None:
    orchestrator, _ = _orchestrator(_FakeBackend())

    with pytest.raises(InvalidTransitionError):
        asyncio.run(orchestrator.save())


def test_concurrent_opens_share_one_analysis() -> None:
    backend = _FakeBackend()
    orchestrator, seen = _orchestrator(backend)

    async def _run():
        backend.analysis_gate = asyncio.Event()
        first = asyncio.create_task(orchestrator.open())
        second = asyncio.create_task(orchestrator.open())
        await asyncio.sleep(0)
        backend.analysis_gate.set()
        return await asyncio.gather(first, second)

    first, second = asyncio.run(_run())

    assert first is second
    assert backend.names().count("fetch_completion_analysis") == 1
    assert seen == [WorkflowStage.ANALYZING, WorkflowStage.AWAITING_USER_INPUT]


def test_reopen_uses_cache_unless_forced() -> None:
    backend = _FakeBackend()
    cache = AnalysisCache(ttl_seconds=0)

    async def _run():
        first, _ = _orchestrator(backend, cache=cache)
        await first.open()
        first.cancel()
        await first.open()
        assert backend.names().count("fetch_completion_analysis") == 1

        await first.open(force_refresh=True)
        assert backend.names().count("fetch_completion_analysis") == 2

    asyncio.run(_run())


def test_failed_first_analysis_acknowledges_back_to_idle() -> None:
    backend = _FakeBackend()
    backend.fail_next("fetch_completion_analysis", BackendRequestError(status=500, code="BACKEND_ERROR", message="db down"))
    orchestrator, _ = _orchestrator(backend)

    with pytest.raises(EnhancementWorkflowError, match="db down"):
        asyncio.run(orchestrator.open())

    assert orchestrator.current_stage_label == "Analyzing profile..."
    assert orchestrator.acknowledge_error() is WorkflowStage.IDLE

    asyncio.run(orchestrator.open())
    assert orchestrator.stage is WorkflowStage.AWAITING_USER_INPUT


def test_untouched_strategic_target_keeps_its_saved_answer() -> None:
    backend = _FakeBackend()
    orchestrator, _ = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        assert orchestrator.edit_state.text("mission") == ""
        orchestrator.set_answer("tagline", "New tagline")
        return await orchestrator.save()

    result = asyncio.run(_run())

    [persisted] = backend.persisted
    assert persisted["text"] == {"tagline": "New tagline"}
    assert backend.entity["intakeData"]["mission"] == "Old mission"
    assert result.entity.text_answers()["mission"] == "Old mission"
    assert result.score.per_category["quick_wins"].missing == ["logo"]


def test_clearing_an_answer_is_sent_as_empty() -> None:
    backend = _FakeBackend()
    orchestrator, _ = _orchestrator(backend)

    async def _run():
        await orchestrator.open()
        orchestrator.set_answer("tagline", "")
        return await orchestrator.save()

    result = asyncio.run(_run())

    [persisted] = backend.persisted
    assert persisted["text"] == {"tagline": ""}
    assert "tagline" in result.score.per_category["quick_wins"].missing


def test_registry_open_during_regenerating_joins_the_running_save() -> None:
    backend = _FakeBackend()
    orchestrator, seen = _orchestrator(backend)
    registry = EnhancementSessionRegistry(lambda entity_id: orchestrator)

    async def _run():
        backend.regenerate_gate = asyncio.Event()
        await registry.open("brain-1")
        save_task = asyncio.create_task(orchestrator.save())
        while orchestrator.stage is not WorkflowStage.REGENERATING:
            await asyncio.sleep(0)

        assert orchestrator.is_busy is True
        joined = await registry.open("brain-1")
        assert joined is orchestrator
        assert orchestrator.stage is WorkflowStage.REGENERATING

        backend.regenerate_gate.set()
        return await save_task

    asyncio.run(_run())

    assert backend.names().count("fetch_completion_analysis") == 2
    assert seen.count(WorkflowStage.ANALYZING) == 1
    assert orchestrator.stage is WorkflowStage.IDLE
    assert orchestrator.is_busy is False


def test_open_while_parked_in_error_returns_current_analysis() -> None:
    backend = _FakeBackend()
    backend.fail_next("regenerate_artifacts", BackendUnavailableError("generator timed out"))
    orchestrator, _ = _orchestrator(backend)

    async def _run():
        analysis = await orchestrator.open()
        orchestrator.set_answer("tagline", "Kept")
        with pytest.raises(EnhancementWorkflowError):
            await orchestrator.save()
        return analysis, await orchestrator.open()

    first, reopened = asyncio.run(_run())

    assert reopened is first
    assert orchestrator.stage is WorkflowStage.ERROR
    assert orchestrator.edit_state.text("tagline") == "Kept"
