"""Operator commands: serve, bulk import, diagnostics, offsets, cleanup, export."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select
from sqlalchemy.orm import Session

from esglabel import auth, services
from esglabel.config import get_settings
from esglabel.db import init_db, session_scope
from esglabel.errors import LabelingError
from esglabel.export import export_project
from esglabel.importer import diagnose_project, import_folder
from esglabel.models import ROLE_ADMIN, ROLE_ANNOTATOR, User
from esglabel.pages import offset_to_start_page
from esglabel.storage import make_document_store, purge_documents

app = typer.Typer(help="ESG annotation tool administration")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    home: str | None = typer.Option(None, "--home", help="Directory holding data/ (database and documents)."),
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy DB URL override."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if home:
        os.environ["ESGLABEL_HOME"] = str(Path(home).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "db_url": db_url}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _open_db(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db_url") if ctx.obj else None)


def _format_scalar(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    scalar_rows = [
        (key, _format_scalar(value)) for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    ]
    if scalar_rows:
        _render_table(title, scalar_rows)
    for key, value in payload.items():
        if isinstance(value, dict) and value:
            _render_table(
                f"{title} · {key}",
                [(str(k), _format_scalar(v)) for k, v in value.items()],
                border_style="magenta",
            )
        elif isinstance(value, list) and value:
            _render_table(
                f"{title} · {key}",
                [("items", str(len(value))), ("preview", json.dumps(value[:3], ensure_ascii=False, default=str))],
                border_style="yellow",
            )


def _fail(exc: LabelingError) -> NoReturn:
    console.print(f"[red]{exc.kind}:[/red] {exc.message}")
    raise typer.Exit(code=1)


def _admin_id(session: Session, username: str | None) -> int:
    username = username or get_settings().admin_user
    if not username:
        raise typer.BadParameter("Provide --admin or set ESGLABEL_ADMIN_USER")
    user = session.execute(select(User).where(User.username == username)).scalars().first()
    if user is None:
        raise typer.BadParameter(f"No user named '{username}'")
    return user.id


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
    reload: bool = typer.Option(False, help="Reload on code changes."),
) -> None:
    import uvicorn
    uvicorn.run("esglabel.app:app", host=host, port=port, reload=reload)


@app.command("create-user")
def create_user_command(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Login name."),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Password."),
    admin: bool = typer.Option(False, "--admin", help="Grant the administrator role."),
) -> None:
    _open_db(ctx)
    with session_scope() as session:
        try:
            user = auth.register_user(session, username, password, ROLE_ADMIN if admin else ROLE_ANNOTATOR)
        except LabelingError as exc:
            _fail(exc)
        _print("create-user", {"id": user.id, "username": user.username, "role": user.role}, ctx)


@app.command("import-folder")
def import_folder_command(
    ctx: typer.Context,
    data_dir: Path = typer.Argument(..., help="Folder with esg_annotation_*.json files and per-project PDF folders."),
    admin: str | None = typer.Option(None, help="Acting admin username (default ESGLABEL_ADMIN_USER)."),
) -> None:
    _open_db(ctx)
    store = make_document_store(get_settings())
    try:
        with session_scope() as session:
            try:
                auth.require_admin(session, _admin_id(session, admin))
                with console.status("[bold cyan]Importing[/bold cyan]", spinner="dots"):
                    result = import_folder(session, store, data_dir)
            except LabelingError as exc:
                _fail(exc)
    finally:
        store.close()
    for item in result.imported:
        _print(f"import · {item.project_name}", item.model_dump(), ctx)
    if result.failed:
        _print("import · failed", {"failed": result.failed}, ctx)
        raise typer.Exit(code=1)


@app.command("diagnose")
def diagnose_command(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Project name or id."),
    show_records: bool = typer.Option(False, "--records", help="List every record."),
) -> None:
    _open_db(ctx)
    with session_scope() as session:
        try:
            report = diagnose_project(session, services.find_project(session, project).id)
        except LabelingError as exc:
            _fail(exc)
    payload = report.model_dump(exclude=None if show_records else {"records"})
    _print(f"diagnose · {report.name}", payload, ctx)
    if show_records and not _wants_json(ctx):
        table = Table(box=ROUNDED, header_style="bold cyan")
        for col in ("id", "page", "expected", "url", "covered"):
            table.add_column(col)
        for row in report.records:
            table.add_row(
                str(row.id), str(row.page_number), str(row.expected_page),
                "yes" if row.has_url else "[red]no[/red]",
                "yes" if row.covered else "[red]no[/red]",
            )
        console.print(table)


@app.command("set-start-page")
def set_start_page_command(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Project name or id."),
    start_page: int | None = typer.Option(None, help="Physical PDF page that holds record page 1."),
    offset: int | None = typer.Option(None, help="Raw page offset (alternative to --start-page)."),
    admin: str | None = typer.Option(None, help="Acting admin username (default ESGLABEL_ADMIN_USER)."),
) -> None:
    if (start_page is None) == (offset is None):
        raise typer.BadParameter("Provide exactly one of --start-page or --offset")
    _open_db(ctx)
    with session_scope() as session:
        actor_id = _admin_id(session, admin)
        try:
            found = services.find_project(session, project)
            updated = services.update_project_offset(
                session, actor_id, found.id, page_offset=offset, start_page=start_page,
            )
        except LabelingError as exc:
            _fail(exc)
        _print("set-start-page", {
            "project": updated.name, "page_offset": updated.page_offset,
            "start_page": offset_to_start_page(updated.page_offset),
        }, ctx)


@app.command("purge-documents")
def purge_documents_command(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
    admin: str | None = typer.Option(None, help="Acting admin username (default ESGLABEL_ADMIN_USER)."),
) -> None:
    """Delete every stored page document. Records keep their (now dangling) URLs."""
    _open_db(ctx)
    with session_scope() as session:
        try:
            auth.require_admin(session, _admin_id(session, admin))
        except LabelingError as exc:
            _fail(exc)
    if not yes:
        typer.confirm("Delete ALL stored page documents?", abort=True)
    store = make_document_store(get_settings())
    try:
        deleted = purge_documents(store)
    except LabelingError as exc:
        _fail(exc)
    finally:
        store.close()
    _print("purge-documents", {"deleted": deleted}, ctx)


@app.command("export")
def export_command(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Project name or id."),
    out: Path | None = typer.Option(None, "--out", help="Output .xlsx path (default data/exports/<project>.xlsx)."),
) -> None:
    _open_db(ctx)
    with session_scope() as session:
        try:
            found = services.find_project(session, project)
        except LabelingError as exc:
            _fail(exc)
        out_path = out or get_settings().data_dir / "exports" / f"{found.name}.xlsx"
        count = export_project(session, found, out_path)
    _print("export", {"project": found.name, "rows": count, "path": str(out_path)}, ctx)


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    _open_db(ctx)
    with session_scope() as session:
        _print("stats", services.compute_stats(session), ctx)


if __name__ == "__main__":
    app()
