from __future__ import annotations

import asyncio
import fnmatch
from pathlib import PurePath
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

import structlog

from brain_console.core.settings import settings
from brain_console.domain.exceptions import (
    BrainConsoleError,
    PartialUploadError,
    UploadFailure,
    UploadRejectedError,
)
from brain_console.domain.schemas.analysis import MissingFieldDescriptor
from brain_console.domain.schemas.uploads import PendingFile, UploadAuthorization, UploadedFileRef, UploadPolicy
from brain_console.infrastructure.observability.logger_config import compact_error

logger = structlog.get_logger(__name__)


class UploadBackendProtocol(Protocol):
    async def request_upload_authorization(
        self,
        *,
        file_name: str,
        mime_type: str,
        field_id: str,
        max_size: int,
        allowed_mime_types: Sequence[str] = (),
    ) -> UploadAuthorization: ...

    async def put_object(self, authorized_url: str, content: bytes, mime_type: str) -> None: ...


def mime_type_allowed(file: PendingFile, accepted: Sequence[str]) -> bool:
    """Match against MIME types, `image/*` wildcards and `.ext` entries. Empty means anything goes."""
    if not accepted:
        return True
    mime_type = file.resolved_mime_type.lower()
    suffix = PurePath(file.name).suffix.lower()
    for entry in accepted:
        rule = entry.strip().lower()
        if not rule:
            continue
        if rule.startswith("."):
            if suffix == rule:
                return True
        elif fnmatch.fnmatchcase(mime_type, rule):
            return True
    return False


class FileUploadPipeline:
    """
    Two-phase upload: ask the backend for an authorized URL, then PUT the raw
    bytes there. A batch is all-or-nothing: every file settles before the
    outcome is decided, and one failure fails the whole batch.
    """

    def __init__(
        self,
        backend: UploadBackendProtocol,
        max_parallel: Optional[int] = None,
        default_max_size: Optional[int] = None,
    ):
        self.backend = backend
        self.max_parallel = max(1, int(max_parallel or settings.UPLOAD_MAX_PARALLEL))
        self.default_max_size = int(default_max_size or settings.UPLOAD_DEFAULT_MAX_SIZE_BYTES)

    def policy_for(self, descriptor: Optional[MissingFieldDescriptor]) -> UploadPolicy:
        if descriptor is None:
            return UploadPolicy(max_size=self.default_max_size)
        return UploadPolicy(
            max_size=descriptor.maxSize or self.default_max_size,
            allowed_mime_types=tuple(descriptor.acceptedTypes or ()),
        )

    def check_policy(self, field_id: str, file: PendingFile, policy: UploadPolicy) -> None:
        if file.size > policy.max_size:
            raise UploadRejectedError(
                field_id, file.name, f"file is {file.size} bytes, limit is {policy.max_size}"
            )
        if not mime_type_allowed(file, policy.allowed_mime_types):
            raise UploadRejectedError(
                field_id,
                file.name,
                f"type {file.resolved_mime_type} is not one of {', '.join(policy.allowed_mime_types)}",
            )

    async def upload(self, field_id: str, file: PendingFile, policy: Optional[UploadPolicy] = None) -> UploadedFileRef:
        resolved_policy = policy or self.policy_for(None)
        self.check_policy(field_id, file, resolved_policy)
        mime_type = file.resolved_mime_type

        try:
            authorization = await self.backend.request_upload_authorization(
                file_name=file.name,
                mime_type=mime_type,
                field_id=field_id,
                max_size=resolved_policy.max_size,
                allowed_mime_types=resolved_policy.allowed_mime_types,
            )
        except BrainConsoleError as exc:
            raise UploadRejectedError(field_id, file.name, f"authorization refused: {exc.message}") from exc

        try:
            await self.backend.put_object(authorization.authorizedUrl, file.content, mime_type)
        except BrainConsoleError as exc:
            raise UploadRejectedError(field_id, file.name, f"transfer failed: {exc.message}") from exc

        logger.debug("file_uploaded", field_id=field_id, file_name=file.name, storage_key=authorization.storageKey)
        return UploadedFileRef(
            url=authorization.fileUrl,
            name=authorization.fileName or file.name,
            storageKey=authorization.storageKey,
            mimeType=mime_type,
        )

    async def upload_batch(
        self,
        batch: Mapping[str, Sequence[PendingFile]],
        policies: Optional[Mapping[str, UploadPolicy]] = None,
    ) -> Dict[str, List[UploadedFileRef]]:
        jobs = [(field_id, file) for field_id, files in batch.items() for file in files]
        if not jobs:
            return {}

        semaphore = asyncio.Semaphore(self.max_parallel)
        resolved_policies = policies or {}

        async def _guarded(field_id: str, file: PendingFile) -> UploadedFileRef:
            async with semaphore:
                return await self.upload(field_id, file, resolved_policies.get(field_id))

        settled = await asyncio.gather(*(_guarded(f, p) for f, p in jobs), return_exceptions=True)

        failures: List[UploadFailure] = []
        uploaded: Dict[str, List[UploadedFileRef]] = {}
        for (field_id, file), outcome in zip(jobs, settled):
            if isinstance(outcome, UploadedFileRef):
                uploaded.setdefault(field_id, []).append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            reason = outcome.reason if isinstance(outcome, UploadRejectedError) else compact_error(outcome)
            failures.append(UploadFailure(field_id=field_id, file_name=file.name, reason=reason))

        if failures:
            logger.error(
                "upload_batch_failed",
                failed=len(failures),
                total=len(jobs),
                fields=sorted({f.field_id for f in failures}),
            )
            raise PartialUploadError(failures, total=len(jobs))

        logger.info("upload_batch_completed", files=len(jobs), fields=len(uploaded))
        return uploaded
