from __future__ import annotations

import json
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator


DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class PendingFile:
    """A file queued by the user, not yet transferred to storage."""

    name: str
    content: bytes = field(repr=False)
    mime_type: Optional[str] = None
    handle_id: str = field(default_factory=lambda: uuid4().hex)

    @classmethod
    def from_path(cls, path: str | Path, mime_type: Optional[str] = None) -> "PendingFile":
        source = Path(path)
        return cls(name=source.name, content=source.read_bytes(), mime_type=mime_type)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def resolved_mime_type(self) -> str:
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.name)
        return guessed or DEFAULT_MIME_TYPE


class UploadedFileRef(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str = Field(validation_alias=AliasChoices("url", "fileUrl"))
    name: str = Field(validation_alias=AliasChoices("name", "fileName"))
    storageKey: str = Field(validation_alias=AliasChoices("storageKey", "key"))
    mimeType: str = Field(validation_alias=AliasChoices("mimeType", "fileType", "type"))

    def to_wire(self) -> Dict[str, str]:
        return {"url": self.url, "name": self.name, "key": self.storageKey, "type": self.mimeType}


class PersistedFileUpload(UploadedFileRef):
    fieldId: str = Field(validation_alias=AliasChoices("fieldId", "field"))
    storageKey: str = Field("", validation_alias=AliasChoices("storageKey", "key"))
    mimeType: str = Field(DEFAULT_MIME_TYPE, validation_alias=AliasChoices("mimeType", "fileType", "type"))


class UploadAuthorization(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    authorizedUrl: str = Field(validation_alias=AliasChoices("authorizedUrl", "presignedUrl"))
    fileUrl: str
    storageKey: str = Field(validation_alias=AliasChoices("storageKey", "key"))
    fileName: Optional[str] = None


@dataclass(frozen=True)
class UploadPolicy:
    max_size: int
    allowed_mime_types: tuple[str, ...] = ()


class EntitySnapshot(BaseModel):
    """Canonical server state of the entity an enhancement session edits."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    intakeData: Dict[str, Any] = Field(default_factory=dict)
    fileUploads: List[PersistedFileUpload] = Field(default_factory=list)

    @field_validator("intakeData", "fileUploads", mode="before")
    @classmethod
    def _decode_json_columns(cls, value: Any, info: ValidationInfo) -> Any:
        empty: Any = {} if info.field_name == "intakeData" else []
        if value is None:
            return empty
        if isinstance(value, str):
            try:
                return json.loads(value) if value.strip() else empty
            except ValueError:
                return empty
        return value

    def text_answers(self) -> Dict[str, str]:
        return {
            key: value
            for key, value in self.intakeData.items()
            if isinstance(value, str) and value.strip()
        }

    def uploads_by_field(self) -> Dict[str, List[UploadedFileRef]]:
        grouped: Dict[str, List[UploadedFileRef]] = {}
        for upload in self.fileUploads:
            grouped.setdefault(upload.fieldId, []).append(
                UploadedFileRef(url=upload.url, name=upload.name, storageKey=upload.storageKey, mimeType=upload.mimeType)
            )
        return grouped
