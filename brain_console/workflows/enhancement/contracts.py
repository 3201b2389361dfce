from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from brain_console.domain.schemas.analysis import BusinessProfileCards, MissingFieldDescriptor
from brain_console.domain.schemas.uploads import EntitySnapshot, PendingFile, UploadedFileRef, UploadPolicy
from brain_console.infrastructure.http.backend_gateway import AnalysisEnvelope


class EnhancementBackendProtocol(Protocol):
    async def fetch_completion_analysis(self, entity_id: str, force_refresh: bool = False) -> AnalysisEnvelope: ...

    async def persist_answers(
        self,
        entity_id: str,
        text_answers: Mapping[str, str],
        uploaded_files: Mapping[str, List[UploadedFileRef]],
    ) -> Dict[str, Any]: ...

    async def regenerate_artifacts(self, entity_id: str) -> Optional[BusinessProfileCards]: ...

    async def synthesize_knowledge(self, entity_id: str) -> Dict[str, Any]: ...

    async def fetch_entity(self, entity_id: str) -> EntitySnapshot: ...


class FileUploaderProtocol(Protocol):
    def policy_for(self, descriptor: Optional[MissingFieldDescriptor]) -> UploadPolicy: ...

    async def upload_batch(
        self,
        batch: Mapping[str, Sequence[PendingFile]],
        policies: Optional[Mapping[str, UploadPolicy]] = None,
    ) -> Dict[str, List[UploadedFileRef]]: ...
