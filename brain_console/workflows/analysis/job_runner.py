from __future__ import annotations

import json
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from pydantic import ValidationError

from brain_console.domain.exceptions import IncompleteStreamError, StreamJobError
from brain_console.domain.schemas.analysis import AnalysisResult, parse_analysis_result
from brain_console.domain.schemas.stream_messages import ErrorMessage, ProgressMessage, ResultMessage
from brain_console.domain.schemas.uploads import PendingFile
from brain_console.infrastructure.http.backend_gateway import BackendGateway
from brain_console.infrastructure.streaming.frame_decoder import decode_stream

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[str], None]


@dataclass(frozen=True)
class JobOutcome:
    payload: Dict[str, Any]
    result: AnalysisResult
    stages: List[str] = field(default_factory=list)


def _is_single_document(content_type: str) -> bool:
    return content_type.split(";", 1)[0].strip().lower() == "application/json"


def _typed_result(payload: Dict[str, Any]) -> AnalysisResult:
    try:
        return parse_analysis_result(payload)
    except ValidationError as exc:
        raise StreamJobError("Analysis result had an unexpected shape", details=exc.errors()) from exc


class AnalysisJobRunner:
    """
    Submits an analysis job and follows it to exactly one terminal frame.

    Progress labels are pushed to listeners in arrival order. A terminal
    error frame raises StreamJobError; a stream that ends without a terminal
    frame raises IncompleteStreamError.
    """

    def __init__(self, gateway: BackendGateway, listeners: Optional[Sequence[ProgressListener]] = None):
        self.gateway = gateway
        self.listeners: List[ProgressListener] = list(listeners or [])
        self.current_stage: Optional[str] = None

    def subscribe(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    async def run(
        self,
        intake: Dict[str, Any],
        files: Optional[Mapping[str, Sequence[PendingFile]]] = None,
    ) -> JobOutcome:
        started = time.perf_counter()
        self.current_stage = None
        async with self.gateway.open_job(intake, files) as response:
            if _is_single_document(response.headers.get("content-type", "")):
                await response.aread()
                outcome = self._from_document(response.content)
            else:
                outcome = await self.consume(response.aiter_bytes())
        logger.info("analysis_job_completed", stages=len(outcome.stages), duration_ms=round((time.perf_counter() - started) * 1000, 2))
        return outcome

    async def consume(self, chunks: AsyncIterable[bytes]) -> JobOutcome:
        stages: List[str] = []
        async with aclosing(decode_stream(chunks)) as messages:
            async for message in messages:
                if isinstance(message, ProgressMessage):
                    stages.append(message.stage)
                    self._notify(message.stage)
                elif isinstance(message, ErrorMessage):
                    logger.error("analysis_job_failed", error=message.message, stages=len(stages))
                    raise StreamJobError(message.message, user_message=message.display_message, details=message.details)
                elif isinstance(message, ResultMessage):
                    return JobOutcome(payload=message.payload, result=_typed_result(message.payload), stages=stages)
        logger.error("analysis_stream_incomplete", stages=len(stages))
        raise IncompleteStreamError()

    def _from_document(self, body: bytes) -> JobOutcome:
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise StreamJobError("Analysis response was not valid JSON") from exc
        if not isinstance(data, dict):
            raise StreamJobError("Analysis response was not a JSON object")
        if data.get("error"):
            raise StreamJobError(
                str(data["error"]),
                user_message=data.get("userMessage"),
                details=data.get("details"),
            )
        payload = data.get("data") if isinstance(data.get("data"), dict) else data
        return JobOutcome(payload=payload, result=_typed_result(payload))

    def _notify(self, stage: str) -> None:
        self.current_stage = stage
        for listener in self.listeners:
            listener(stage)
