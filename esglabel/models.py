from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from esglabel.utils import json_parse

ROLE_ADMIN = "admin"
ROLE_ANNOTATOR = "annotator"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    password: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=ROLE_ANNOTATOR)  # admin | annotator
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    page_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    records: Mapped[list[SourceRecord]] = relationship(
        "SourceRecord", back_populates="project", cascade="all, delete-orphan",
        order_by="SourceRecord.id",
    )


class SourceRecord(Base):
    __tablename__ = "source_records"
    __table_args__ = (UniqueConstraint("project_id", "content_hash", name="uq_record_project_content"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    original_data: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 of original_data
    source_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # intrinsic, pre-offset
    bbox_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="records")
    annotations: Mapped[list[Annotation]] = relationship(
        "Annotation", back_populates="record", cascade="all, delete-orphan",
    )
    pool_assignment: Mapped[PoolAssignment | None] = relationship(
        "PoolAssignment", back_populates="record", cascade="all, delete-orphan", uselist=False,
    )

    @property
    def bbox(self) -> list[float] | None:
        return json_parse(self.bbox_json, None)


class _LabelFields:
    esg_type_json: Mapped[str] = mapped_column(Text, default="[]")
    promise_status: Mapped[str] = mapped_column(String(10), default="")
    promise_string: Mapped[str] = mapped_column(Text, default="")
    verification_timeline: Mapped[str] = mapped_column(String(40), default="")
    evidence_status: Mapped[str] = mapped_column(String(10), default="")
    evidence_string: Mapped[str] = mapped_column(Text, default="")
    evidence_quality: Mapped[str] = mapped_column(String(20), default="")
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING)  # pending | completed
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def esg_type(self) -> list[str]:
        return json_parse(self.esg_type_json, [])


class Annotation(_LabelFields, Base):
    """One annotator's labels for one record (per-user mode)."""

    __tablename__ = "annotations"
    __table_args__ = (UniqueConstraint("source_record_id", "user_id", name="uq_annotation_record_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("source_records.id", ondelete="CASCADE"), nullable=False,
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    record: Mapped[SourceRecord] = relationship("SourceRecord", back_populates="annotations")


class PoolAssignment(_LabelFields, Base):
    """The single claim on a record in shared-pool mode.

    The row exists from the moment an annotator claims the record; the unique
    ``source_record_id`` is what makes a claim exclusive.
    """

    __tablename__ = "pool_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("source_records.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    annotator_name: Mapped[str] = mapped_column(String(100), nullable=False)

    record: Mapped[SourceRecord] = relationship("SourceRecord", back_populates="pool_assignment")
