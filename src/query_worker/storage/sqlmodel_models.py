"""SQLModel ORM tables for the query job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class QueryJob(SQLModel, table=True):
    __tablename__ = "query_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_query_jobs_queue", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    query_sql: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    result_xml: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
