from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

ASSIGNMENT_MODES = ("per_user", "shared_pool")
STORAGE_BACKENDS = ("local", "http")


def _resolve_home() -> Path:
    override = os.getenv("ESGLABEL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_url: str = ""
    documents_dir: Path | None = None

    # "per_user": every annotator labels every record.
    # "shared_pool": each record is labeled once, by whoever claims it first.
    assignment_mode: str = "per_user"

    storage_backend: str = "local"
    blob_url: str = ""
    blob_token: str = ""
    max_upload_mb: int = 50

    admin_user: str = ""

    @field_validator("assignment_mode")
    @classmethod
    def mode_must_be_known(cls, v: str) -> str:
        if v not in ASSIGNMENT_MODES:
            raise ValueError(f"assignment_mode must be one of {', '.join(ASSIGNMENT_MODES)}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def backend_must_be_known(cls, v: str) -> str:
        if v not in STORAGE_BACKENDS:
            raise ValueError(f"storage_backend must be one of {', '.join(STORAGE_BACKENDS)}")
        return v

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir / 'esglabel.db'}"

    @property
    def resolved_documents_dir(self) -> Path:
        return self.documents_dir or self.data_dir / "documents"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.resolved_documents_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    documents_dir = _env("ESGLABEL_DOCUMENTS_DIR")
    return Settings(
        database_url=_env("ESGLABEL_DATABASE_URL"),
        documents_dir=Path(documents_dir).expanduser() if documents_dir else None,
        assignment_mode=_env("ESGLABEL_ASSIGNMENT_MODE", "per_user"),
        storage_backend=_env("ESGLABEL_STORAGE", "local"),
        blob_url=_env("ESGLABEL_BLOB_URL"),
        blob_token=_env("ESGLABEL_BLOB_TOKEN"),
        max_upload_mb=int(_env("ESGLABEL_MAX_UPLOAD_MB", "50") or 50),
        admin_user=_env("ESGLABEL_ADMIN_USER"),
    )
