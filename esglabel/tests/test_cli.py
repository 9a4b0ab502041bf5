from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from esglabel.cli import app
from esglabel.config import get_settings

runner = CliRunner()


@pytest.fixture()
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("ESGLABEL_HOME", str(tmp_path))
    monkeypatch.delenv("ESGLABEL_ADMIN_USER", raising=False)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


def _run(*args: str):
    result = runner.invoke(app, ["--json", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def _write_dataset(root):
    data = root / "incoming"
    (data / "acme").mkdir(parents=True)
    for page in (1, 2):
        (data / "acme" / f"acme_page_{page}.pdf").write_bytes(b"%PDF")
    (data / "esg_annotation_acme.json").write_text(json.dumps([
        {"data": "one", "page_number": 1},
        {"data": "two", "page_number": 2},
    ]))
    return data


class TestCli:
    def test_admin_workflow(self, home):
        created = _run("create-user", "root", "--password", "pw", "--admin")
        assert created["role"] == "admin"

        data = _write_dataset(home)
        result = runner.invoke(app, ["import-folder", str(data), "--admin", "root"])
        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in (home / "data" / "documents").iterdir()) == [
            "acme_page_1.pdf", "acme_page_2.pdf",
        ]

        report = _run("diagnose", "acme")
        assert (report["total"], report["with_url"], report["min_page"], report["max_page"]) == (2, 2, 1, 2)
        assert "records" not in report

        moved = _run("set-start-page", "acme", "--start-page", "5", "--admin", "root")
        assert moved == {"project": "acme", "page_offset": 4, "start_page": 5}

        assert _run("diagnose", "acme")["uncovered_pages"] == [5, 6]

        exported = _run("export", "acme")
        assert exported["rows"] == 0
        assert (home / "data" / "exports" / "acme.xlsx").exists()

        assert _run("stats")["records"] == 2
        assert _run("purge-documents", "--yes", "--admin", "root") == {"deleted": 2}

    def test_set_start_page_requires_admin(self, home):
        _run("create-user", "root", "--password", "pw", "--admin")
        _run("create-user", "alice", "--password", "pw")
        _write_dataset(home)
        runner.invoke(app, ["import-folder", str(home / "incoming"), "--admin", "root"])
        result = runner.invoke(app, ["set-start-page", "acme", "--offset", "2", "--admin", "alice"])
        assert result.exit_code == 1
        assert "authorization" in result.output

    def test_unknown_project(self, home):
        result = runner.invoke(app, ["diagnose", "nope"])
        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_exactly_one_offset_option(self, home):
        result = runner.invoke(app, ["set-start-page", "acme"])
        assert result.exit_code != 0

    def test_import_folder_requires_admin(self, home):
        _run("create-user", "alice", "--password", "pw")
        data = _write_dataset(home)
        result = runner.invoke(app, ["import-folder", str(data), "--admin", "alice"])
        assert result.exit_code == 1
        assert "authorization" in result.output
        assert _run("stats")["records"] == 0

    def test_purge_documents_requires_admin(self, home):
        _run("create-user", "alice", "--password", "pw")
        (home / "data" / "documents").mkdir(parents=True)
        (home / "data" / "documents" / "keep_page_1.pdf").write_bytes(b"%PDF")
        result = runner.invoke(app, ["purge-documents", "--yes", "--admin", "alice"])
        assert result.exit_code == 1
        assert (home / "data" / "documents" / "keep_page_1.pdf").exists()

    def test_purge_documents_needs_an_actor(self, home):
        result = runner.invoke(app, ["purge-documents", "--yes"])
        assert result.exit_code != 0
