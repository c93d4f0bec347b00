from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from listing_converter.core.config import settings

LogStatus = Literal["info", "success", "warning", "error"]

_TRUTHY_FLAGS = {"1", "true", "yes", "on"}


class ImportSettings(BaseModel):
    """
    Immutable snapshot of the options chosen for one import job.

    Captured at submission and read by every stage of that job. The
    ``date_formats``, ``row_count`` and ``file_name`` values are derived while
    the job is submitted, not chosen by the caller.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    post_type: str = "gd_place"
    author_id: Optional[int] = None
    post_status: str = "publish"
    batch_size: int = Field(default_factory=lambda: settings.import_batch_size, gt=0)
    import_chunk_size: int = Field(default_factory=lambda: settings.import_chunk_size, gt=0)
    mapping: Dict[str, str] = Field(default_factory=dict)  # Maps source_column -> destination_field
    delimiter: str = ","
    test_mode: bool = False
    date_formats: Dict[str, str] = Field(default_factory=dict)
    row_count: int = 0
    file_name: Optional[str] = None

    @field_validator("post_type", mode="before")
    def default_post_type(cls, value: Any) -> str:
        value = str(value or "").strip()
        return value or "gd_place"

    @field_validator("author_id", mode="before")
    def blank_author_is_none(cls, value: Any) -> Any:
        if value in (None, "", 0, "0"):
            return None
        return value

    @field_validator("test_mode", mode="before")
    def parse_test_mode(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        return str(value).strip().lower() in _TRUTHY_FLAGS

    @field_validator("delimiter", mode="before")
    def validate_delimiter(cls, value: Any) -> str:
        value = "" if value is None else str(value)
        if value == "":
            return ","
        if len(value) > 1:
            raise ValueError("delimiter must be a single character")
        return value

    @field_validator("mapping", mode="before")
    def sanitize_mapping(cls, value: Any) -> Dict[str, str]:
        """Drop unmapped columns; keep the source order."""
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("mapping must be an object of source column to destination field")
        sanitized: Dict[str, str] = {}
        for column, target in value.items():
            column = str(column or "").strip()
            target = str(target or "").strip()
            if column and target:
                sanitized[column] = target
        if not sanitized:
            raise ValueError("map at least one source column to a destination field")
        return sanitized


class Task(BaseModel):
    """One unit of queued work: the stage cursor, its action and progress offset."""
    action: str
    stage: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    offset: int = 0


class ImportStats(BaseModel):
    total: int = 0
    succeeded: int = 0
    updated: int = 0  # Subset of succeeded that updated an existing record
    skipped: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped + self.failed


class LogEntry(BaseModel):
    message: str
    status: LogStatus = "info"
    timestamp: str


class MappingTemplate(BaseModel):
    id: str
    name: str
    mapping: Dict[str, str]
    created_at: str


class SubmitJobRequest(BaseModel):
    settings: Dict[str, Any] = Field(default_factory=dict)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    restart: bool = False


class JobStatusResponse(BaseModel):
    success: bool = True
    importer_id: str
    in_progress: bool
    progress: int
    message: str
    stats: ImportStats
    logs: List[LogEntry]
    logs_shown: int


class SubmitJobResponse(BaseModel):
    success: bool = True
    importer_id: str
    row_count: int
    in_progress: bool
    progress: int
    headers: List[str] = Field(default_factory=list)
    sample_data: Dict[str, str] = Field(default_factory=dict)  # First non-empty value per CSV column


class TickResponse(BaseModel):
    success: bool = True
    importer_id: str
    processed: bool
    action: Optional[str] = None
    in_progress: bool
    progress: int


class SaveTemplateRequest(BaseModel):
    name: str
    mapping: Dict[str, str]


class TemplateResponse(BaseModel):
    success: bool = True
    template: MappingTemplate


class TemplateListResponse(BaseModel):
    success: bool = True
    templates: List[MappingTemplate]
    total_count: int


class DeleteTemplateResponse(BaseModel):
    success: bool = True
    template_id: str
    deleted: bool


class CsvPreviewResponse(BaseModel):
    success: bool = True
    importer_id: str
    file_name: Optional[str] = None
    row_count: int
    headers: List[str]
    sample_data: Dict[str, str]
    raw_rows: List[List[str]]


class MappingField(BaseModel):
    field: str
    kind: str
    type: Optional[str] = None


class MappingFieldsResponse(BaseModel):
    success: bool = True
    importer_id: str
    post_type: str
    fields: List[MappingField]
