"""
Typed frames of a newline-delimited job stream.

The backend tags frames with `type` and puts the result body under `data`;
both those spellings and `kind`/`payload` are accepted.
"""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class _Frame(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ProgressMessage(_Frame):
    kind: Literal["progress"] = Field("progress", validation_alias=AliasChoices("kind", "type"))
    stage: str = Field(min_length=1)


class ResultMessage(_Frame):
    kind: Literal["result"] = Field("result", validation_alias=AliasChoices("kind", "type"))
    payload: Dict[str, Any] = Field(validation_alias=AliasChoices("payload", "data"))


class ErrorMessage(_Frame):
    kind: Literal["error"] = Field("error", validation_alias=AliasChoices("kind", "type"))
    message: str
    details: Optional[Any] = None
    userMessage: Optional[str] = Field(None, validation_alias=AliasChoices("userMessage", "user_message"))

    @model_validator(mode="before")
    @classmethod
    def _resolve_message(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("message"):
            return data
        merged = dict(data)
        merged["message"] = str(
            data.get("error") or data.get("details") or data.get("userMessage") or "Analysis failed"
        )
        return merged

    @property
    def display_message(self) -> str:
        return self.userMessage or self.message


StreamMessage = Union[ProgressMessage, ResultMessage, ErrorMessage]

_FRAME_MODELS: Dict[str, type[_Frame]] = {
    "progress": ProgressMessage,
    "result": ResultMessage,
    "error": ErrorMessage,
}


def parse_stream_message(raw: Any) -> StreamMessage:
    """Validate one decoded JSON object as a stream frame.

    Raises ValueError for non-objects and unknown discriminants, and
    pydantic.ValidationError for malformed known frames.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"stream frame must be an object, got {type(raw).__name__}")
    kind = raw.get("kind") or raw.get("type")
    model = _FRAME_MODELS.get(str(kind or ""))
    if model is None:
        raise ValueError(f"unknown stream frame kind: {kind!r}")
    return model.model_validate(raw)  # type: ignore[return-value]
