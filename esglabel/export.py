"""Export a project's annotations to an XLSX workbook."""
from __future__ import annotations

import logging
import re
from io import BytesIO
from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from sqlalchemy import select
from sqlalchemy.orm import Session

from esglabel.models import STATUS_COMPLETED, Annotation, PoolAssignment, Project, SourceRecord, User
from esglabel.pages import resolve_page

log = logging.getLogger(__name__)

HEADERS = (
    "record_id", "annotator", "status", "page_number", "displayed_page", "original_data",
    "esg_type", "promise_status", "promise_string", "verification_timeline",
    "evidence_status", "evidence_string", "evidence_quality", "updated_at",
)

_HEADER_FILL = PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid")


def annotation_rows(session: Session, project: Project) -> list[tuple]:
    """One row per completed annotation of the project, per-user and shared-pool alike.

    Pending rows (handed out but never saved) carry no labels and are left out.
    """
    per_user = session.execute(
        select(SourceRecord, Annotation, User.username)
        .join(Annotation, Annotation.source_record_id == SourceRecord.id)
        .join(User, User.id == Annotation.user_id)
        .where(SourceRecord.project_id == project.id)
        .where(Annotation.status == STATUS_COMPLETED)
    ).all()
    pooled = session.execute(
        select(SourceRecord, PoolAssignment, PoolAssignment.annotator_name)
        .join(PoolAssignment, PoolAssignment.source_record_id == SourceRecord.id)
        .where(SourceRecord.project_id == project.id)
        .where(PoolAssignment.status == STATUS_COMPLETED)
    ).all()

    rows: list[tuple] = []
    for record, ann, annotator in [*per_user, *pooled]:
        rows.append((
            record.id, annotator, ann.status, record.page_number,
            resolve_page(record.page_number, project.page_offset), record.original_data,
            ",".join(ann.esg_type), ann.promise_status, ann.promise_string,
            ann.verification_timeline, ann.evidence_status, ann.evidence_string,
            ann.evidence_quality, ann.updated_at.isoformat() if ann.updated_at else "",
        ))
    rows.sort(key=lambda r: (r[0], r[1]))
    return rows


def build_workbook(session: Session, project: Project) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = re.sub(r"[\\/?*\[\]:]", "_", project.name)[:31] or "annotations"
    ws.append(HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
    for row in annotation_rows(session, project):
        ws.append(row)
    for cell in ws["F"][1:]:
        cell.alignment = Alignment(wrap_text=True, vertical="top")
    ws.column_dimensions["F"].width = 80
    ws.freeze_panes = "A2"
    return wb


def export_project(session: Session, project: Project, out_path: str | Path) -> int:
    """Write the workbook to *out_path*. Returns the number of annotation rows."""
    wb = build_workbook(session, project)
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(out_path)
    count = wb.active.max_row - 1
    log.info("Exported %d annotations of %s to %s", count, project.name, out_path)
    return count


def export_bytes(session: Session, project: Project) -> bytes:
    buf = BytesIO()
    build_workbook(session, project).save(buf)
    return buf.getvalue()
