"""Bulk import of record sets and their page documents.

A record set is a JSON array ``[{"data": ..., "page_number": ..., "bbox": ...}]``
named ``esg_annotation_<key>.json``. Its page documents are PDFs whose names
contain ``<key>``: either one whole report, or one file per page named
``..._page_<n>.pdf``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import unquote

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from esglabel.errors import (
    LabelingError, NotFoundError, PartialResolutionWarning, TransactionFailure, ValidationError,
)
from esglabel.models import Project, SourceRecord
from esglabel.pages import page_index_from_name, resolve_page
from esglabel.schemas import (
    DiagnosticsOut, ImportFolderResult, ImportResult, RecordDiagnostic, RepairResult,
)
from esglabel.storage import DocumentStore
from esglabel.utils import coerce_bbox, content_hash, preview

log = logging.getLogger(__name__)

RECORD_SET_PREFIX = "esg_annotation_"


@dataclass(frozen=True)
class RecordIn:
    text: str
    page_number: int
    bbox: list[float] | None = None


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def project_name_from_filename(filename: str) -> str:
    """``esg_annotation_fubon_2881.json`` -> ``fubon_2881``."""
    name = Path(filename.replace("\\", "/")).name
    if not name.lower().endswith(".json"):
        raise ValidationError(f"Record set must be a .json file (got '{name}')")
    key = name[: -len(".json")]
    if key.startswith(RECORD_SET_PREFIX):
        key = key[len(RECORD_SET_PREFIX):]
    key = key.strip()
    if not key:
        raise ValidationError(f"Cannot derive a project name from '{name}'")
    return key


def check_document_names(project_name: str, names: list[str]) -> None:
    """Every page document must be a PDF whose name contains the project key."""
    if not names:
        raise ValidationError("Both a JSON record set and at least one PDF document are required")
    not_pdf = [n for n in names if not n.lower().endswith(".pdf")]
    if not_pdf:
        raise ValidationError(f"Only PDF documents are supported: {', '.join(not_pdf)}")
    mismatched = [n for n in names if project_name not in n]
    if mismatched:
        raise ValidationError(
            f"PDF name does not match the record set '{project_name}': {', '.join(mismatched)}"
        )


def _page_number(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError(value)
    if value is None or value == "" or value == 0:
        return 1
    number = int(value)  # type: ignore[call-overload]
    if number < 0:
        raise ValueError(value)
    return number


def parse_record_set(raw: bytes | str) -> list[RecordIn]:
    """Parse and validate a JSON record set. Records keep their file order."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Record set is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ValidationError("Record set must be a JSON array of records")

    out: list[RecordIn] = []
    for idx, item in enumerate(payload):
        if not isinstance(item, dict) or not isinstance(item.get("data"), str):
            raise ValidationError(f"Record #{idx + 1} has no text 'data' field")
        try:
            page = _page_number(item.get("page_number"))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Record #{idx + 1} has an invalid page_number: {item.get('page_number')!r}"
            ) from exc
        bbox = None
        if item.get("bbox") is not None:
            bbox = coerce_bbox(item["bbox"])
            if bbox is None:
                log.warning("Record #%d: dropping malformed bbox %r", idx + 1, item["bbox"])
        out.append(RecordIn(text=item["data"], page_number=page, bbox=bbox))
    return out


def build_page_map(named_urls: Iterable[tuple[str, str]]) -> dict[int, str]:
    """``{page index: url}`` from (document name, url) pairs."""
    page_urls: dict[int, str] = {}
    for name, url in named_urls:
        page = page_index_from_name(name)
        if page is None:
            log.debug("No page index in document name %s, skipping", name)
            continue
        page_urls[page] = url
    return page_urls


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def find_or_create_project(session: Session, name: str) -> tuple[Project, bool]:
    """Return (project, created). Safe to call concurrently for the same name."""
    project = session.execute(select(Project).where(Project.name == name)).scalars().first()
    if project is not None:
        return project, False
    project = Project(name=name, page_offset=0)
    session.add(project)
    try:
        session.commit()
    except IntegrityError:
        # Another import created it first.
        session.rollback()
        project = session.execute(select(Project).where(Project.name == name)).scalars().one()
        return project, False
    log.info("Created project %s (id %d)", name, project.id)
    return project, True


def import_records(
    session: Session,
    project_name: str,
    records: list[RecordIn],
    *,
    page_urls: dict[int, str] | None = None,
    document_url: str | None = None,
    documents_stored: int = 0,
) -> ImportResult:
    """Insert *records* into the project, skipping texts it already has.

    The record loop is all-or-nothing; the project row is created (and kept)
    before it starts, so a failed import can simply be retried.
    """
    project, created = find_or_create_project(session, project_name)
    have_documents = page_urls is not None or document_url is not None
    if not have_documents:
        log.warning("Project %s: no page documents supplied, records will have no source_url", project_name)

    seen: set[str] = set(session.execute(
        select(SourceRecord.content_hash).where(SourceRecord.project_id == project.id)
    ).scalars())
    inserted = skipped = 0
    unresolved: list[PartialResolutionWarning] = []

    try:
        for item in records:
            key = content_hash(item.text)
            if key in seen:
                skipped += 1
                continue
            url = page_urls.get(item.page_number) if page_urls is not None else document_url
            if url is None:
                unresolved.append(PartialResolutionWarning(preview(item.text), item.page_number))
                if have_documents:
                    log.warning("Project %s: no PDF for page %d", project_name, item.page_number)
            session.add(SourceRecord(
                project_id=project.id,
                original_data=item.text,
                content_hash=key,
                source_url=url,
                page_number=item.page_number,
                bbox_json=json.dumps(item.bbox) if item.bbox is not None else None,
            ))
            seen.add(key)
            inserted += 1
        session.commit()
    except Exception as exc:
        session.rollback()
        log.error("Import into %s rolled back: %s", project_name, exc)
        raise TransactionFailure(f"Import into '{project_name}' was rolled back", exc) from exc

    log.info(
        "Project %s: %d records in file, %d inserted, %d skipped",
        project_name, len(records), inserted, skipped,
    )
    return ImportResult(
        project_id=project.id,
        project_name=project.name,
        created_project=created,
        total_in_file=len(records),
        inserted=inserted,
        skipped=skipped,
        documents_stored=documents_stored,
        unresolved=[w.as_dict() for w in unresolved],
    )


def import_upload(
    session: Session,
    store: DocumentStore,
    json_name: str,
    json_bytes: bytes,
    documents: list[tuple[str, bytes]],
    *,
    max_document_bytes: int | None = None,
) -> ImportResult:
    """Import one uploaded record set with its PDF(s).

    Everything is validated before the first document is stored or the first
    row is written.
    """
    project_name = project_name_from_filename(json_name)
    records = parse_record_set(json_bytes)
    check_document_names(project_name, [name for name, _ in documents])
    if max_document_bytes is not None:
        too_big = [name for name, data in documents if len(data) > max_document_bytes]
        if too_big:
            raise ValidationError(f"Document too large: {', '.join(too_big)}")

    paged = [page_index_from_name(name) is not None for name, _ in documents]
    if len(documents) > 1 and not all(paged):
        raise ValidationError("When uploading several PDFs, every name must end in _page_<n>.pdf")

    if all(paged):
        named_urls = [(name, store.store(name, data)) for name, data in documents]
        return import_records(
            session, project_name, records,
            page_urls=build_page_map(named_urls), documents_stored=len(named_urls),
        )
    name, data = documents[0]
    url = store.store(name, data)
    return import_records(session, project_name, records, document_url=url, documents_stored=1)


def import_folder(session: Session, store: DocumentStore, data_dir: str | Path) -> ImportFolderResult:
    """Import every ``esg_annotation_*.json`` in *data_dir*.

    Page documents are taken from the sub-folder whose name contains the
    record set's key. A failing project is reported and the rest continue.
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise ValidationError(f"Data folder not found: {data_dir}")
    entries = sorted(data_dir.iterdir())
    json_files = [p for p in entries if p.is_file() and p.name.startswith(RECORD_SET_PREFIX) and p.suffix == ".json"]
    folders = [p for p in entries if p.is_dir()]
    log.info("Found %d record sets in %s", len(json_files), data_dir)

    result = ImportFolderResult()
    for json_path in json_files:
        key = project_name_from_filename(json_path.name)
        try:
            records = parse_record_set(json_path.read_bytes())
            folder = next((d for d in folders if key in d.name), None)
            if folder is None:
                log.warning("No PDF folder for %s, importing without documents", key)
                result.imported.append(import_records(session, key, records))
                continue
            pdfs = sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".pdf")
            named_urls = [
                (p.name, store.store(p.name, p.read_bytes()))
                for p in pdfs if page_index_from_name(p.name) is not None
            ]
            log.info("Project %s: stored %d page documents from %s", key, len(named_urls), folder.name)
            result.imported.append(import_records(
                session, key, records,
                page_urls=build_page_map(named_urls), documents_stored=len(named_urls),
            ))
        except LabelingError as exc:
            log.error("Project %s failed: %s", key, exc.message)
            result.failed[key] = exc.message
        except OSError as exc:
            log.error("Project %s failed reading files: %s", key, exc)
            result.failed[key] = f"Could not read files: {exc}"
    return result


# ---------------------------------------------------------------------------
# Repair & diagnostics
# ---------------------------------------------------------------------------


def _get_project(session: Session, project_id: int) -> Project:
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def _project_records(session: Session, project_id: int) -> list[SourceRecord]:
    return list(session.execute(
        select(SourceRecord).where(SourceRecord.project_id == project_id).order_by(SourceRecord.id)
    ).scalars())


def repair_document_urls(
    session: Session,
    project_id: int,
    page_urls: dict[int, str],
    *,
    use_offset: bool = True,
) -> RepairResult:
    """Point each record at the document for its page in a fresh page map.

    Records whose page is missing from the map keep their current URL. Text
    and page numbers are never touched.
    """
    project = _get_project(session, project_id)
    records = _project_records(session, project.id)
    updated = still_unresolved = 0
    for record in records:
        page = resolve_page(record.page_number, project.page_offset) if use_offset else record.page_number
        url = page_urls.get(page)
        if url is None:
            if record.source_url is None:
                still_unresolved += 1
            continue
        if record.source_url != url:
            record.source_url = url
            updated += 1
    session.commit()
    log.info("Project %s: repaired %d document references", project.name, updated)
    return RepairResult(
        project_id=project.id, checked=len(records),
        updated=updated, still_unresolved=still_unresolved,
    )


def page_map_from_urls(urls: Iterable[str]) -> dict[int, str]:
    """Rebuild a page map from stored URLs whose file names carry a page index."""
    return build_page_map((unquote(url.rsplit("/", 1)[-1]), url) for url in urls)


def diagnose_project(
    session: Session, project_id: int, page_urls: dict[int, str] | None = None,
) -> DiagnosticsOut:
    """Report URL coverage so an operator can pick the right page offset."""
    project = _get_project(session, project_id)
    records = _project_records(session, project.id)
    if page_urls is None:
        page_urls = page_map_from_urls({r.source_url for r in records if r.source_url})

    rows: list[RecordDiagnostic] = []
    uncovered: set[int] = set()
    for record in records:
        expected = resolve_page(record.page_number, project.page_offset)
        has_url = record.source_url is not None
        covered = expected in page_urls if page_urls else has_url
        if not covered:
            uncovered.add(expected)
        rows.append(RecordDiagnostic(
            id=record.id, page_number=record.page_number,
            expected_page=expected, has_url=has_url, covered=covered,
        ))
    with_url = sum(1 for r in rows if r.has_url)
    return DiagnosticsOut(
        project_id=project.id,
        name=project.name,
        page_offset=project.page_offset,
        total=len(rows),
        with_url=with_url,
        without_url=len(rows) - with_url,
        min_page=min(page_urls) if page_urls else None,
        max_page=max(page_urls) if page_urls else None,
        uncovered_pages=sorted(uncovered),
        records=rows,
    )
