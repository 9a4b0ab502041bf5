"""Pydantic request/response schemas for the labeling API."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

ESG_TYPES = ("E", "S", "G")

PromiseStatus = Literal["Yes", "No", ""]
EvidenceStatus = Literal["Yes", "No", "N/A", ""]
VerificationTimeline = Literal[
    "within_2_years", "between_2_and_5_years", "longer_than_5_years", "already", "N/A", "",
]
EvidenceQuality = Literal["Clear", "Not Clear", "Misleading", "N/A", ""]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    username: str
    password: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    role: str


# ---------------------------------------------------------------------------
# Projects & import
# ---------------------------------------------------------------------------


class ProjectOut(BaseModel):
    id: int
    name: str
    page_offset: int
    start_page: int
    total_tasks: int
    completed_tasks: int


class OffsetUpdate(BaseModel):
    """Either a raw offset or a start page ("record page 1 is physical page N")."""
    actor_id: int
    page_offset: int | str | None = None
    start_page: int | None = None


class ImportResult(BaseModel):
    project_id: int
    project_name: str
    created_project: bool
    total_in_file: int
    inserted: int
    skipped: int
    documents_stored: int = 0
    unresolved: list[dict] = []


class ImportFolderResult(BaseModel):
    imported: list[ImportResult] = []
    failed: dict[str, str] = {}


class RepairResult(BaseModel):
    project_id: int
    checked: int
    updated: int
    still_unresolved: int


class RecordDiagnostic(BaseModel):
    id: int
    page_number: int
    expected_page: int
    has_url: bool
    covered: bool


class DiagnosticsOut(BaseModel):
    project_id: int
    name: str
    page_offset: int
    total: int
    with_url: int
    without_url: int
    min_page: int | None = None
    max_page: int | None = None
    uncovered_pages: list[int] = []
    records: list[RecordDiagnostic] = []


# ---------------------------------------------------------------------------
# Tasks & annotations
# ---------------------------------------------------------------------------


class SpanIn(BaseModel):
    label: Literal["promise", "evidence"]
    start: int
    end: int


class AnnotationIn(BaseModel):
    user_id: int
    esg_type: list[str] = []
    promise_status: PromiseStatus = ""
    promise_string: str = ""
    verification_timeline: VerificationTimeline = ""
    evidence_status: EvidenceStatus = ""
    evidence_string: str = ""
    evidence_quality: EvidenceQuality = ""
    spans: list[SpanIn] | None = None

    @field_validator("esg_type")
    @classmethod
    def esg_types_must_be_known(cls, v: list[str]) -> list[str]:
        unknown = [t for t in v if t not in ESG_TYPES]
        if unknown:
            raise ValueError(f"esg_type values must be among E, S, G (got {', '.join(unknown)})")
        return v


class TaskOut(BaseModel):
    id: int
    project_id: int
    original_data: str
    text: str
    source_url: str | None = None
    page_number: int
    intrinsic_page: int
    bbox: list[float] | None = None
    esg_type: list[str] = []
    promise_status: str = ""
    promise_string: str = ""
    verification_timeline: str = ""
    evidence_status: str = ""
    evidence_string: str = ""
    evidence_quality: str = ""
    status: str = "pending"


class ProgressOut(BaseModel):
    total: int
    completed: int


class NextTaskOut(BaseModel):
    task: TaskOut | None = None
    progress: ProgressOut


class SaveResult(BaseModel):
    success: bool = True
    record_id: int
    status: str
    promise_string: str
    evidence_string: str


# ---------------------------------------------------------------------------
# Overlay
# ---------------------------------------------------------------------------


class OverlayIn(BaseModel):
    bbox: list[float] | None = None
    scale: float = 1.5
    page_height: float


class OverlayOut(BaseModel):
    rect: dict[str, float] | None = None


class StatsOut(BaseModel):
    projects: int
    records: int
    users: int
    completed_annotations: int
    by_project: dict[str, int]
