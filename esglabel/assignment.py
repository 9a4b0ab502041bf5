"""Task assignment: which record an annotator labels next, and saving labels.

Two modes share one interface:

- **per_user**: every annotator labels every record of a project once.
  Records are handed out in ascending id order, skipping those the user has
  completed, so progress is monotonic and resumable.
- **shared_pool**: each record is labeled once in total. An annotator first
  resumes a record they already claimed, otherwise claims the lowest-id
  unclaimed record. A claim is one INSERT guarded by the unique record id, so
  two annotators can never hold the same record.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import exists, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from esglabel.config import get_settings
from esglabel.errors import ConflictError, NotFoundError, ValidationError
from esglabel.models import (
    STATUS_COMPLETED, STATUS_PENDING, Annotation, PoolAssignment, Project, SourceRecord, User,
)
from esglabel.pages import resolve_page
from esglabel.schemas import ESG_TYPES, AnnotationIn, ProgressOut, SaveResult, TaskOut
from esglabel.spans import SpanDocument

log = logging.getLogger(__name__)

LABEL_FIELDS = (
    "promise_status", "promise_string", "verification_timeline",
    "evidence_status", "evidence_string", "evidence_quality",
)

MAX_CLAIM_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Save-time rules
# ---------------------------------------------------------------------------


def normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Apply the dependencies between label fields before anything is stored."""
    out = dict(fields)
    chosen = set(out.get("esg_type") or [])
    out["esg_type"] = [t for t in ESG_TYPES if t in chosen]
    if out.get("promise_status") == "No":
        out["verification_timeline"] = "N/A"
        out["evidence_status"] = "N/A"
    if out.get("evidence_status") != "Yes":
        out["evidence_quality"] = "N/A"
    return out


def label_fields(record: SourceRecord, payload: AnnotationIn) -> dict[str, Any]:
    """Collect the fields to store; spans, when sent, decide the two strings."""
    fields = payload.model_dump(include={"esg_type", *LABEL_FIELDS})
    if payload.spans is not None:
        doc = SpanDocument.from_markup(record.original_data).apply_all(
            s.model_dump() for s in payload.spans
        )
        fields["promise_string"] = doc.extract_labeled("promise")
        fields["evidence_string"] = doc.extract_labeled("evidence")
    return normalize_fields(fields)


def _write_fields(row: Annotation | PoolAssignment, fields: dict[str, Any]) -> None:
    row.esg_type_json = json.dumps(fields["esg_type"])
    for name in LABEL_FIELDS:
        setattr(row, name, fields.get(name) or "")
    row.status = STATUS_COMPLETED


def task_payload(
    record: SourceRecord, project: Project, row: Annotation | PoolAssignment | None = None,
) -> TaskOut:
    """The task handed to the UI; ``page_number`` is already offset."""
    data: dict[str, Any] = {
        "id": record.id,
        "project_id": record.project_id,
        "original_data": record.original_data,
        "text": SpanDocument.from_markup(record.original_data).original,
        "source_url": record.source_url,
        "page_number": resolve_page(record.page_number, project.page_offset),
        "intrinsic_page": record.page_number,
        "bbox": record.bbox,
    }
    if row is not None:
        data.update({name: getattr(row, name) for name in LABEL_FIELDS})
        data["esg_type"] = row.esg_type
        data["status"] = row.status
    return TaskOut(**data)


# ---------------------------------------------------------------------------
# Assigners
# ---------------------------------------------------------------------------


class TaskAssigner(ABC):
    mode: str = ""

    @abstractmethod
    def next_task(self, session: Session, project_id: int, user: User) -> TaskOut | None:
        """Return the user's next task, or None once nothing is left for them."""

    @abstractmethod
    def save(self, session: Session, record_id: int, user: User, payload: AnnotationIn) -> SaveResult:
        """Store the labels for one record and mark it completed."""

    @abstractmethod
    def completed_count(self, session: Session, project_id: int, user: User) -> int: ...

    def progress(self, session: Session, project_id: int, user: User) -> ProgressOut:
        total = session.execute(
            select(func.count(SourceRecord.id)).where(SourceRecord.project_id == project_id)
        ).scalar_one()
        return ProgressOut(total=total, completed=self.completed_count(session, project_id, user))

    @staticmethod
    def _project(session: Session, project_id: int) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        return project

    @staticmethod
    def _record(session: Session, record_id: int) -> SourceRecord:
        record = session.get(SourceRecord, record_id)
        if record is None:
            raise NotFoundError(f"Record {record_id} not found")
        return record


class PerUserAssigner(TaskAssigner):
    mode = "per_user"

    def _row(self, session: Session, record_id: int, user_id: int) -> Annotation | None:
        return session.execute(
            select(Annotation).where(
                Annotation.source_record_id == record_id, Annotation.user_id == user_id,
            )
        ).scalars().first()

    def next_task(self, session: Session, project_id: int, user: User) -> TaskOut | None:
        project = self._project(session, project_id)
        done = exists().where(
            Annotation.source_record_id == SourceRecord.id,
            Annotation.user_id == user.id,
            Annotation.status == STATUS_COMPLETED,
        )
        record = session.execute(
            select(SourceRecord)
            .where(SourceRecord.project_id == project.id, ~done)
            .order_by(SourceRecord.id)
            .limit(1)
        ).scalars().first()
        if record is None:
            return None

        row = self._row(session, record.id, user.id)
        if row is None:
            row = Annotation(source_record_id=record.id, user_id=user.id, status=STATUS_PENDING)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Same user asked twice at once; the other request made the row.
                session.rollback()
                row = self._row(session, record.id, user.id)
        return task_payload(record, project, row)

    def save(self, session: Session, record_id: int, user: User, payload: AnnotationIn) -> SaveResult:
        record = self._record(session, record_id)
        fields = label_fields(record, payload)
        row = self._row(session, record.id, user.id)
        if row is None:
            row = Annotation(source_record_id=record.id, user_id=user.id)
            session.add(row)
        _write_fields(row, fields)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"Annotation for record {record_id} changed concurrently, please retry") from exc
        log.debug("User %s completed record %d", user.username, record.id)
        return SaveResult(
            record_id=record.id, status=row.status,
            promise_string=row.promise_string, evidence_string=row.evidence_string,
        )

    def completed_count(self, session: Session, project_id: int, user: User) -> int:
        return session.execute(
            select(func.count(Annotation.id))
            .join(SourceRecord, SourceRecord.id == Annotation.source_record_id)
            .where(
                SourceRecord.project_id == project_id,
                Annotation.user_id == user.id,
                Annotation.status == STATUS_COMPLETED,
            )
        ).scalar_one()


class SharedPoolAssigner(TaskAssigner):
    mode = "shared_pool"

    def _claim(self, session: Session, record_id: int, user: User) -> bool:
        """Claim *record_id* for *user* in one guarded write. False if someone was faster."""
        try:
            session.execute(insert(PoolAssignment).values(
                source_record_id=record_id, annotator_name=user.username, status=STATUS_PENDING,
            ))
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def _row(self, session: Session, record_id: int) -> PoolAssignment | None:
        return session.execute(
            select(PoolAssignment).where(PoolAssignment.source_record_id == record_id)
        ).scalars().first()

    def next_task(self, session: Session, project_id: int, user: User) -> TaskOut | None:
        project = self._project(session, project_id)
        resumed = session.execute(
            select(SourceRecord, PoolAssignment)
            .join(PoolAssignment, PoolAssignment.source_record_id == SourceRecord.id)
            .where(
                SourceRecord.project_id == project.id,
                PoolAssignment.annotator_name == user.username,
                PoolAssignment.status == STATUS_PENDING,
            )
            .order_by(SourceRecord.id)
            .limit(1)
        ).first()
        if resumed is not None:
            record, row = resumed
            return task_payload(record, project, row)

        claimed = exists().where(PoolAssignment.source_record_id == SourceRecord.id)
        for _ in range(MAX_CLAIM_ATTEMPTS):
            record = session.execute(
                select(SourceRecord)
                .where(SourceRecord.project_id == project.id, ~claimed)
                .order_by(SourceRecord.id)
                .limit(1)
            ).scalars().first()
            if record is None:
                return None
            if self._claim(session, record.id, user):
                log.debug("%s claimed record %d", user.username, record.id)
                return task_payload(record, project, self._row(session, record.id))
            log.info("Record %d was claimed by someone else, trying the next one", record.id)
        raise ConflictError("Could not claim a record, please request the next task again")

    def save(self, session: Session, record_id: int, user: User, payload: AnnotationIn) -> SaveResult:
        record = self._record(session, record_id)
        fields = label_fields(record, payload)
        row = self._row(session, record.id)
        if row is None:
            if not self._claim(session, record.id, user):
                raise ConflictError(f"Record {record_id} was claimed by another annotator")
            row = self._row(session, record.id)
        if row is None or row.annotator_name != user.username:
            raise ConflictError(f"Record {record_id} is assigned to another annotator")
        _write_fields(row, fields)
        session.commit()
        return SaveResult(
            record_id=record.id, status=row.status,
            promise_string=row.promise_string, evidence_string=row.evidence_string,
        )

    def completed_count(self, session: Session, project_id: int, user: User) -> int:  # noqa: ARG002
        return session.execute(
            select(func.count(PoolAssignment.id))
            .join(SourceRecord, SourceRecord.id == PoolAssignment.source_record_id)
            .where(SourceRecord.project_id == project_id, PoolAssignment.status == STATUS_COMPLETED)
        ).scalar_one()


_ASSIGNERS: dict[str, type[TaskAssigner]] = {
    PerUserAssigner.mode: PerUserAssigner,
    SharedPoolAssigner.mode: SharedPoolAssigner,
}


def get_assigner(mode: str | None = None) -> TaskAssigner:
    """The assigner for *mode*, defaulting to the configured assignment mode."""
    mode = mode or get_settings().assignment_mode
    try:
        return _ASSIGNERS[mode]()
    except KeyError:
        raise ValidationError(f"Unknown assignment mode '{mode}'") from None
