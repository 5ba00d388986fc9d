"""Data models for the content pipeline."""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

SourceType = Literal["meeting", "competitive_signal", "product_update", "customer_insight"]

SOURCE_TYPES: tuple[str, ...] = (
    "meeting",
    "competitive_signal",
    "product_update",
    "customer_insight",
)

VARIABLE_TYPES = frozenset({"string", "number", "boolean", "array", "object"})


# --- Source records --------------------------------------------------------


class _RecordBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    body: str = Field("", description="Free-text body of the record.")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MeetingRecord(_RecordBase):
    source_type: Literal["meeting"] = "meeting"
    title: str = ""
    meeting_date: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    customer_name: str = ""
    contact_name: str = ""
    contact_title: str = ""
    transcript: str = ""


class CompetitiveSignalRecord(_RecordBase):
    source_type: Literal["competitive_signal"] = "competitive_signal"
    competitor_name: str = ""
    signal_type: str = ""
    signal_title: str = ""
    impact_level: str = "medium"
    source_url: Optional[str] = None
    detected_at: Optional[datetime] = None


class ProductUpdateRecord(_RecordBase):
    source_type: Literal["product_update"] = "product_update"
    title: str = ""
    description: str = ""
    product_name: str = ""
    jira_key: Optional[str] = None
    version: Optional[str] = None
    update_kind: Literal["feature", "improvement", "bug_fix", "breaking_change"] = "feature"
    completion_date: Optional[datetime] = None


class CustomerInsightRecord(_RecordBase):
    source_type: Literal["customer_insight"] = "customer_insight"
    customer_name: str = ""
    challenge: str = ""
    requested_feature: str = ""
    customer_quote: str = ""
    sentiment: str = "neutral"


SourceRecord = Annotated[
    Union[MeetingRecord, CompetitiveSignalRecord, ProductUpdateRecord, CustomerInsightRecord],
    Field(discriminator="source_type"),
]

_SOURCE_RECORD_ADAPTER: TypeAdapter = TypeAdapter(SourceRecord)


def parse_source_record(data: Dict[str, Any]):
    """Build the matching record variant from a plain dict."""
    return _SOURCE_RECORD_ADAPTER.validate_python(data)


# --- Requests and templates ------------------------------------------------


class DataSourceSpec(BaseModel):
    """One data source reference in a content request."""

    type: SourceType
    ids: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)


class ContentRequest(BaseModel):
    """A single request to produce one content artifact.

    Exactly one of ``template_id`` or ``content_type`` must be set. Field names
    also accept their camelCase aliases (``templateId``, ``dataSources``...).
    """

    model_config = ConfigDict(populate_by_name=True)

    template_id: Optional[str] = Field(None, alias="templateId")
    content_type: Optional[str] = Field(None, alias="contentType")
    data_sources: List[DataSourceSpec] = Field(default_factory=list, alias="dataSources")
    custom_variables: Dict[str, Any] = Field(default_factory=dict, alias="customVariables")
    target_audience: Optional[str] = Field(None, alias="targetAudience")
    content_format: str = Field("markdown", alias="contentFormat")
    approval_required: bool = Field(True, alias="approvalRequired")
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    use_ai: bool = Field(True, alias="useAI")
    enhance: bool = Field(True, description="Allow one fix-and-revalidate attempt.")

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "ContentRequest":
        if bool(self.template_id) == bool(self.content_type):
            raise ValueError("Exactly one of templateId or contentType is required.")
        return self


class Template(BaseModel):
    """A parametrized content skeleton."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    template_type: str
    content: str
    variables: Dict[str, str] = Field(
        default_factory=dict, description="Variable name -> declared type."
    )
    target_audience: Optional[str] = None
    description: str = ""


# --- API payloads ------------------------------------------------------------


class ContentTarget(BaseModel):
    """A content mapping submitted for validation."""

    title: str = ""
    content: str = ""
    variables: Dict[str, str] = Field(default_factory=dict)
    content_type: str = Field("general", validation_alias=AliasChoices("type", "content_type"))
    audience: Optional[str] = None
    is_template: bool = False


class BatchPayload(BaseModel):
    """Body of a batch run; each request is parsed on its own so one bad item fails alone."""

    requests: List[Any]
    max_workers: Optional[int] = Field(None, ge=1)
