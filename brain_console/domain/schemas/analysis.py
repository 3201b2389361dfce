"""
Domain schemas for generated artifacts and completion analyses.

Field names follow the backend's camelCase wire format; the backend's
alternative spellings (`fieldType`, `name`, `accept`) are accepted as
validation aliases.
"""
from __future__ import annotations

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
    model_validator,
)


FieldKind = Literal["text", "textarea", "file"]
Priority = Literal["high", "medium", "low"]

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?i?b?)\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_size(value: Any) -> Optional[int]:
    """'10MB' -> 10485760, '500 KB' -> 512000, 2048 -> 2048, '' -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("size must be a number or a string like '10MB'")
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"unrecognized size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit[:1].lower()])


class _Schema(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# --- Completion analysis tree ------------------------------------------------


class MissingFieldDescriptor(_Schema):
    fieldId: str = Field(min_length=1)
    label: str = Field("", validation_alias=AliasChoices("label", "name"))
    kind: FieldKind = Field("text", validation_alias=AliasChoices("kind", "fieldType"))
    helpText: Optional[str] = None
    placeholder: Optional[str] = None
    section: Optional[str] = None
    acceptedTypes: Optional[List[str]] = Field(None, validation_alias=AliasChoices("acceptedTypes", "accept"))
    maxSize: Optional[int] = None

    @field_validator("acceptedTypes", mode="before")
    @classmethod
    def _split_accept(cls, value: Any) -> Any:
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return parts or None
        return value

    @field_validator("maxSize", mode="before")
    @classmethod
    def _parse_max_size(cls, value: Any) -> Optional[int]:
        return parse_size(value)

    @model_validator(mode="before")
    @classmethod
    def _default_label(cls, data: Any) -> Any:
        if isinstance(data, dict) and not (data.get("label") or data.get("name")):
            return {**data, "label": data.get("fieldId") or ""}
        return data


class RefinementQuestion(_Schema):
    id: str = Field(min_length=1)
    question: str
    cardTitle: str = ""
    priority: Priority = "medium"
    kind: Literal["text", "textarea"] = Field("textarea", validation_alias=AliasChoices("kind", "fieldType"))
    helpText: Optional[str] = None
    relatedFieldId: Optional[str] = None


class StrategicRecommendation(_Schema):
    recommendation: str
    targetField: Optional[str] = None
    why: Optional[str] = None
    actionType: Literal["fill_form", "upload", "external"] = "fill_form"

    @field_validator("targetField", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CardAnalysis(_Schema):
    cardId: str
    cardType: str = ""
    cardTitle: str = ""
    currentConfidence: float = 0
    targetConfidence: float = 80
    priority: Priority = "medium"
    missingContexts: List[MissingFieldDescriptor] = Field(default_factory=list)
    refinementQuestions: List[RefinementQuestion] = Field(default_factory=list)
    strategicRecommendations: List[StrategicRecommendation] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _inherit_card_title(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        title = data.get("cardTitle") or ""
        questions = data.get("refinementQuestions")
        if not title or not isinstance(questions, list):
            return data
        merged = dict(data)
        merged["refinementQuestions"] = [
            {**q, "cardTitle": q.get("cardTitle") or title} if isinstance(q, dict) else q
            for q in questions
        ]
        return merged


class QuickWin(_Schema):
    id: str = ""
    label: str = ""
    field: Optional[str] = None
    action: Literal["fill_form", "upload"] = "fill_form"


class OverallAnalysis(_Schema):
    averageConfidence: float = 0
    cardsBelow80: int = 0
    totalCards: int = 0
    criticalMissingFields: List[str] = Field(default_factory=list)
    totalRefinementQuestions: int = 0


class EnhancementAnalysis(_Schema):
    cardAnalysis: List[CardAnalysis] = Field(default_factory=list)
    overallAnalysis: Optional[OverallAnalysis] = None
    quickWins: List[QuickWin] = Field(default_factory=list)

    def strategic_target_fields(self) -> set[str]:
        return {
            rec.targetField
            for card in self.cardAnalysis
            for rec in card.strategicRecommendations
            if rec.targetField
        }

    def quick_win_fields(self) -> List[MissingFieldDescriptor]:
        """Missing-field descriptors across all cards, de-duplicated by fieldId (first wins)."""
        seen: Dict[str, MissingFieldDescriptor] = {}
        for card in self.cardAnalysis:
            for descriptor in card.missingContexts:
                seen.setdefault(descriptor.fieldId, descriptor)
        for win in self.quickWins:
            if win.field and win.field not in seen:
                seen[win.field] = MissingFieldDescriptor(
                    fieldId=win.field,
                    label=win.label or win.field,
                    kind="file" if win.action == "upload" else "text",
                )
        return list(seen.values())

    def refinement_questions(self) -> List[RefinementQuestion]:
        seen: Dict[str, RefinementQuestion] = {}
        for card in self.cardAnalysis:
            for question in card.refinementQuestions:
                seen.setdefault(question.id, question)
        return list(seen.values())

    def field_kinds(self) -> Dict[str, FieldKind]:
        kinds: Dict[str, FieldKind] = {d.fieldId: d.kind for d in self.quick_win_fields()}
        for question in self.refinement_questions():
            kinds.setdefault(question.id, question.kind)
        return kinds


# --- Generated artifacts -------------------------------------------------------


class KnowledgeBaseInfo(_Schema):
    used: bool = False
    version: Optional[int] = None
    organizationId: Optional[str] = None


class ArtifactMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    knowledgeBase: Optional[KnowledgeBaseInfo] = None
    generatedAt: Optional[str] = None


class JobDescriptionPackage(_Schema):
    artifactType: Literal["job_description"] = "job_description"
    preview: Dict[str, Any] = Field(default_factory=dict)
    fullPackage: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("fullPackage", "full_package")
    )
    metadata: ArtifactMetadata = Field(default_factory=ArtifactMetadata)

    @property
    def service_type(self) -> str:
        structure = self.fullPackage.get("service_structure") or {}
        return str(self.preview.get("service_type") or structure.get("service_type") or "Job Description")


class ProfileCard(_Schema):
    id: str
    type: str = ""
    title: str = ""
    summary: str = ""
    confidence_score: float = Field(0, validation_alias=AliasChoices("confidence_score", "confidenceScore"))
    content: Dict[str, Any] = Field(default_factory=dict)


class BusinessProfileCards(_Schema):
    artifactType: Literal["business_profile"] = "business_profile"
    cards: List[ProfileCard] = Field(default_factory=list)
    metadata: ArtifactMetadata = Field(default_factory=ArtifactMetadata)


class SopDocument(_Schema):
    artifactType: Literal["sop"] = "sop"
    title: str = ""
    content: str = ""
    version: Optional[int] = None
    metadata: ArtifactMetadata = Field(default_factory=ArtifactMetadata)


def _artifact_discriminator(value: Any) -> Optional[str]:
    if isinstance(value, BaseModel):
        return getattr(value, "artifactType", None)
    if not isinstance(value, dict):
        return None
    explicit = value.get("artifactType") or value.get("artifact_type")
    if explicit:
        return str(explicit)
    if "cards" in value:
        return "business_profile"
    if "preview" in value or "full_package" in value or "fullPackage" in value:
        return "job_description"
    if "content" in value:
        return "sop"
    return None


AnalysisResult = Annotated[
    Union[
        Annotated[JobDescriptionPackage, Tag("job_description")],
        Annotated[BusinessProfileCards, Tag("business_profile")],
        Annotated[SopDocument, Tag("sop")],
    ],
    Discriminator(_artifact_discriminator),
]

_analysis_result_adapter: TypeAdapter[Any] = TypeAdapter(AnalysisResult)


def parse_analysis_result(payload: Any) -> Union[JobDescriptionPackage, BusinessProfileCards, SopDocument]:
    return _analysis_result_adapter.validate_python(payload)
