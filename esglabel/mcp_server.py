from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import get_args

from mcp.server.fastmcp import FastMCP

from esglabel import services
from esglabel.assignment import get_assigner
from esglabel.config import get_settings
from esglabel.db import init_db, session_scope
from esglabel.errors import LabelingError
from esglabel.importer import diagnose_project
from esglabel.schemas import ESG_TYPES, EvidenceQuality, EvidenceStatus, PromiseStatus, VerificationTimeline

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def esglabel_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "ESG Label",
    instructions=(
        "Read-only view of an ESG annotation database. "
        "Start with get_stats() for an overview, then list_projects() to browse. "
        "Use project_diagnostics(project) to see which records lack a page document "
        "and get_progress(project, user_id) for one annotator's progress."
    ),
    lifespan=esglabel_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


def _choices(literal) -> list[str]:
    return [v for v in get_args(literal) if v]


@mcp.resource("esglabel://overview")
def esglabel_overview() -> str:
    """Data model and label vocabulary."""
    return json.dumps({
        "data_model": {
            "project": "One imported report. page_offset maps intrinsic page numbers to physical PDF pages.",
            "record": "A text passage with its intrinsic page_number, optional bbox and page document URL.",
            "annotation": "One user's labels for one record (per_user mode) or the single pool label (shared_pool mode).",
        },
        "labels": {
            "esg_type": list(ESG_TYPES),
            "promise_status": _choices(PromiseStatus),
            "verification_timeline": _choices(VerificationTimeline),
            "evidence_status": _choices(EvidenceStatus),
            "evidence_quality": _choices(EvidenceQuality),
        },
        "assignment_mode": get_settings().assignment_mode,
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Counts of projects, records, users and completed annotations."""
    with session_scope() as session:
        return services.compute_stats(session)


@mcp.tool()
def list_projects() -> list[dict]:
    """All projects with their page offset and record count."""
    with session_scope() as session:
        return services.list_projects(session)


@mcp.tool()
def project_diagnostics(project: str) -> dict:
    """Document coverage for a project (name or id): records without a URL and uncovered pages."""
    with session_scope() as session:
        try:
            found = services.find_project(session, project)
            return diagnose_project(session, found.id).model_dump()
        except LabelingError as exc:
            return {"error": exc.message}


@mcp.tool()
def get_progress(project: str, user_id: int) -> dict:
    """How many records of a project (name or id) the user has completed."""
    with session_scope() as session:
        try:
            found = services.find_project(session, project)
            user = services.get_user(session, user_id)
            progress = get_assigner().progress(session, found.id, user)
        except LabelingError as exc:
            return {"error": exc.message}
        return {"project": found.name, "user": user.username, **progress.model_dump()}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the ESG Label MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
