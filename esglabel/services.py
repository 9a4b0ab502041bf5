"""Shared business logic for the labeling API, CLI and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from esglabel.assignment import TaskAssigner, get_assigner
from esglabel.auth import get_user, require_admin
from esglabel.errors import NotFoundError, ValidationError
from esglabel.models import STATUS_COMPLETED, Annotation, PoolAssignment, Project, SourceRecord, User
from esglabel.pages import offset_to_start_page, parse_offset, start_page_to_offset
from esglabel.schemas import AnnotationIn, NextTaskOut, SaveResult

log = logging.getLogger(__name__)


def get_entity(session: Session, model, entity_id: int):
    """Fetch a single entity by primary key, or None."""
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def get_project(session: Session, project_id: int) -> Project:
    project = get_entity(session, Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def find_project(session: Session, name_or_id: str) -> Project:
    """Look a project up by name, falling back to a numeric id."""
    project = session.execute(select(Project).where(Project.name == name_or_id)).scalars().first()
    if project is None and name_or_id.isdigit():
        project = get_entity(session, Project, int(name_or_id))
    if project is None:
        raise NotFoundError(f"Project '{name_or_id}' not found")
    return project


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def project_summary(session: Session, project: Project, user: User | None, assigner: TaskAssigner) -> dict:
    if user is not None:
        progress = assigner.progress(session, project.id, user)
        total, completed = progress.total, progress.completed
    else:
        total = session.execute(
            select(func.count(SourceRecord.id)).where(SourceRecord.project_id == project.id)
        ).scalar_one()
        completed = 0
    return {
        "id": project.id, "name": project.name, "page_offset": project.page_offset,
        "start_page": offset_to_start_page(project.page_offset),
        "total_tasks": total, "completed_tasks": completed,
    }


def list_projects(session: Session, user_id: int | None = None, assigner: TaskAssigner | None = None) -> list[dict]:
    """All projects with the given user's progress in each."""
    assigner = assigner or get_assigner()
    user = get_user(session, user_id) if user_id is not None else None
    projects = session.execute(select(Project).order_by(Project.name)).scalars().all()
    return [project_summary(session, p, user, assigner) for p in projects]


def update_project_offset(
    session: Session, actor_id: int, project_id: int,
    *, page_offset: Any = None, start_page: int | None = None,
) -> Project:
    """Set a project's page offset, directly or from a start page.

    Invalid input leaves the stored offset unchanged. Records are not touched.
    """
    require_admin(session, actor_id)
    project = get_project(session, project_id)
    if start_page is not None:
        new_offset = start_page_to_offset(start_page)
    elif page_offset is not None:
        new_offset = parse_offset(page_offset)
    else:
        raise ValidationError("Provide page_offset or start_page")
    project.page_offset = new_offset
    session.commit()
    log.info("Project %s: page offset set to %d", project.name, new_offset)
    return project


def delete_project(session: Session, actor_id: int, project_id: int) -> None:
    """Delete a project with all its records and annotations."""
    admin = require_admin(session, actor_id)
    project = get_project(session, project_id)
    log.info("Admin %s deleting project %s", admin.username, project.name)
    session.delete(project)
    session.commit()


# ---------------------------------------------------------------------------
# Labeling loop
# ---------------------------------------------------------------------------


def next_task_for_user(
    session: Session, project_id: int, user_id: int, assigner: TaskAssigner | None = None,
) -> NextTaskOut:
    assigner = assigner or get_assigner()
    user = get_user(session, user_id)
    task = assigner.next_task(session, project_id, user)
    return NextTaskOut(task=task, progress=assigner.progress(session, project_id, user))


def save_annotation(
    session: Session, record_id: int, payload: AnnotationIn, assigner: TaskAssigner | None = None,
) -> SaveResult:
    assigner = assigner or get_assigner()
    user = get_user(session, payload.user_id)
    return assigner.save(session, record_id, user, payload)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    projects = session.execute(select(Project)).scalars().all()
    by_project: dict[str, int] = {}
    for project in projects:
        by_project[project.name] = session.execute(
            select(func.count(SourceRecord.id)).where(SourceRecord.project_id == project.id)
        ).scalar_one()
    completed = session.execute(
        select(func.count(Annotation.id)).where(Annotation.status == STATUS_COMPLETED)
    ).scalar_one() + session.execute(
        select(func.count(PoolAssignment.id)).where(PoolAssignment.status == STATUS_COMPLETED)
    ).scalar_one()
    return {
        "projects": len(projects),
        "records": sum(by_project.values()),
        "users": session.execute(select(func.count(User.id))).scalar_one(),
        "completed_annotations": completed,
        "by_project": by_project,
    }
