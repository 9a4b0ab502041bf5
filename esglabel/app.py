from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from esglabel import auth, services
from esglabel.assignment import TaskAssigner, get_assigner
from esglabel.config import get_settings
from esglabel.db import get_session, init_db, session_scope
from esglabel.errors import LabelingError
from esglabel.export import export_bytes
from esglabel.importer import (
    build_page_map, check_document_names, diagnose_project, import_upload, repair_document_urls,
)
from esglabel.overlay import project_bbox
from esglabel.schemas import (
    AnnotationIn,
    DiagnosticsOut,
    ImportResult,
    NextTaskOut,
    OffsetUpdate,
    OverlayIn,
    OverlayOut,
    ProjectOut,
    RepairResult,
    SaveResult,
    StatsOut,
    UserCreate,
    UserOut,
)
from esglabel.storage import DocumentStore, make_document_store, purge_documents

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    settings = get_settings()
    if settings.admin_user:
        with session_scope() as session:
            auth.ensure_admin(session, settings.admin_user)
    yield


app = FastAPI(
    title="ESG Label",
    version="0.1.0",
    description=(
        "Multi-annotator labeling of ESG disclosure text against the report pages it "
        "was extracted from. Errors are returned as {\"error\", \"kind\"} objects."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Users", "description": "Register and log in annotators."},
        {"name": "Projects", "description": "Projects and per-user progress."},
        {"name": "Tasks", "description": "Fetch the next record to label and save labels."},
        {"name": "Import", "description": "Upload record sets and their PDF pages."},
        {"name": "Admin", "description": "Page offsets, diagnostics, repair, export, cleanup."},
    ],
)

app.mount(
    "/documents",
    StaticFiles(directory=get_settings().resolved_documents_dir, check_dir=False),
    name="documents",
)


@app.exception_handler(LabelingError)
async def labeling_error_handler(request: Request, exc: LabelingError):  # noqa: ARG001
    return JSONResponse(status_code=exc.status_code, content=exc.as_result())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=422, content={"error": problems, "kind": "validation"})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def document_store() -> Generator[DocumentStore, None, None]:
    store = make_document_store(get_settings())
    try:
        yield store
    finally:
        store.close()


def task_assigner() -> TaskAssigner:
    return get_assigner()


async def _read_documents(files: list[UploadFile]) -> list[tuple[str, bytes]]:
    return [(f.filename or "", await f.read()) for f in files]


# ---------------------------------------------------------------------------
# Routes: Users
# ---------------------------------------------------------------------------


@app.post("/api/users/register", response_model=UserOut, status_code=201,
          tags=["Users"], summary="Register a new annotator")
async def register(body: UserCreate, session: Session = Depends(db_session)):
    return auth.register_user(session, body.username, body.password)


@app.post("/api/users/login", response_model=UserOut, tags=["Users"], summary="Log in")
async def login(body: UserCreate, session: Session = Depends(db_session)):
    return auth.login_user(session, body.username, body.password)


# ---------------------------------------------------------------------------
# Routes: Projects & tasks
# ---------------------------------------------------------------------------


@app.get("/api/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects with the user's progress")
async def list_projects(
    user_id: int | None = Query(None, description="Whose progress to report"),
    session: Session = Depends(db_session),
    assigner: TaskAssigner = Depends(task_assigner),
):
    return services.list_projects(session, user_id, assigner)


@app.get("/api/projects/{project_id}/next", response_model=NextTaskOut,
         tags=["Tasks"], summary="Next record for this user (task is null when the project is done)")
async def next_task(
    project_id: int,
    user_id: int = Query(...),
    session: Session = Depends(db_session),
    assigner: TaskAssigner = Depends(task_assigner),
):
    return services.next_task_for_user(session, project_id, user_id, assigner)


@app.post("/api/tasks/{record_id}/annotation", response_model=SaveResult,
          tags=["Tasks"], summary="Save labels for a record and mark it completed")
async def save_annotation(
    record_id: int,
    body: AnnotationIn,
    session: Session = Depends(db_session),
    assigner: TaskAssigner = Depends(task_assigner),
):
    return services.save_annotation(session, record_id, body, assigner)


@app.post("/api/overlay", response_model=OverlayOut,
          tags=["Tasks"], summary="Project a stored bbox onto a rendered page")
async def overlay(body: OverlayIn):
    rect = project_bbox(body.bbox, body.scale, body.page_height)
    return {"rect": rect.as_dict() if rect else None}


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import an esg_annotation_*.json record set with its PDF(s)")
async def import_project(
    actor_id: int = Form(...),
    json_file: UploadFile = File(...),
    documents: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    store: DocumentStore = Depends(document_store),
):
    auth.require_admin(session, actor_id)
    json_bytes = await json_file.read()
    docs = await _read_documents(documents)
    return import_upload(
        session, store, json_file.filename or "", json_bytes, docs,
        max_document_bytes=get_settings().max_upload_bytes,
    )


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.put("/api/projects/{project_id}/offset", response_model=ProjectOut,
         tags=["Admin"], summary="Set the page offset (or the physical start page)")
async def update_offset(
    project_id: int,
    body: OffsetUpdate,
    session: Session = Depends(db_session),
    assigner: TaskAssigner = Depends(task_assigner),
):
    project = services.update_project_offset(
        session, body.actor_id, project_id, page_offset=body.page_offset, start_page=body.start_page,
    )
    return services.project_summary(session, project, None, assigner)


@app.delete("/api/projects/{project_id}", tags=["Admin"],
            summary="Delete a project with all records and annotations")
async def delete_project(project_id: int, actor_id: int = Query(...), session: Session = Depends(db_session)):
    services.delete_project(session, actor_id, project_id)
    return {"ok": True}


@app.get("/api/projects/{project_id}/diagnostics", response_model=DiagnosticsOut,
         tags=["Admin"], summary="Document coverage per record, for choosing the page offset")
async def diagnostics(project_id: int, actor_id: int = Query(...), session: Session = Depends(db_session)):
    auth.require_admin(session, actor_id)
    return diagnose_project(session, project_id)


@app.post("/api/projects/{project_id}/repair", response_model=RepairResult,
          tags=["Admin"], summary="Re-resolve record document URLs from freshly uploaded page PDFs")
async def repair(
    project_id: int,
    actor_id: int = Form(...),
    use_offset: bool = Form(True),
    documents: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    store: DocumentStore = Depends(document_store),
):
    auth.require_admin(session, actor_id)
    project = services.get_project(session, project_id)
    docs = await _read_documents(documents)
    check_document_names(project.name, [name for name, _ in docs])
    page_urls = build_page_map((name, store.store(name, data)) for name, data in docs)
    return repair_document_urls(session, project.id, page_urls, use_offset=use_offset)


@app.get("/api/projects/{project_id}/export.xlsx", tags=["Admin"], summary="Download all annotations as XLSX")
async def export_project(project_id: int, actor_id: int = Query(...), session: Session = Depends(db_session)):
    auth.require_admin(session, actor_id)
    project = services.get_project(session, project_id)
    return Response(
        content=export_bytes(session, project),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(project.name)}_annotations.xlsx"},
    )


@app.delete("/api/documents", tags=["Admin"], summary="Delete every stored page document")
async def purge(
    actor_id: int = Query(...),
    session: Session = Depends(db_session),
    store: DocumentStore = Depends(document_store),
):
    auth.require_admin(session, actor_id)
    return {"deleted": purge_documents(store)}


@app.get("/api/stats", response_model=StatsOut, tags=["Admin"], summary="Aggregate counts")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("esglabel.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
