"""SQLAlchemy schema definitions and session management."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any, Callable

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from gem_insight.db_helpers import dialect_insert, is_sqlite_url, normalize_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "db"})

SessionFactory = Callable[[], Session]


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Gemstone(Base):
    """Catalog entry with the metadata declared at listing time."""

    __tablename__ = "gemstones"

    gemstone_id: Mapped[str] = mapped_column(String, primary_key=True)
    serial_number: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    cut: Mapped[str | None] = mapped_column(String, nullable=True)
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    weight_carats: Mapped[float | None] = mapped_column(Float, nullable=True)
    length_mm: Mapped[float | None] = mapped_column(Float, nullable=True)
    width_mm: Mapped[float | None] = mapped_column(Float, nullable=True)
    depth_mm: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class GemstoneAssetRow(Base):
    """One stored image or video of a gemstone."""

    __tablename__ = "gemstone_assets"

    asset_id: Mapped[str] = mapped_column(String, primary_key=True)
    gemstone_id: Mapped[str] = mapped_column(
        String, ForeignKey("gemstones.gemstone_id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="photo")
    locator: Mapped[str] = mapped_column(String, nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_filename: Mapped[str | None] = mapped_column(String, nullable=True)
    thumbnail_locator: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("idx_gemstone_assets_gemstone_ordinal", "gemstone_id", "ordinal"),)


class AnalysisRecordRow(Base):
    """Current consolidated analysis for one gemstone and pipeline version."""

    __tablename__ = "gemstone_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gemstone_id: Mapped[str] = mapped_column(
        String, ForeignKey("gemstones.gemstone_id", ondelete="CASCADE"), nullable=False
    )
    pipeline_version: Mapped[str] = mapped_column(String, nullable=False)
    fields_json: Mapped[str] = mapped_column(Text, nullable=False)
    primary_asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    primary_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    primary_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_source: Mapped[str | None] = mapped_column(String, nullable=True)
    image_scores_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False)
    review_reasons_json: Mapped[str] = mapped_column(Text, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    media_analyzed_json: Mapped[str] = mapped_column(Text, nullable=False)
    failures_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("gemstone_id", "pipeline_version", name="uq_gemstone_analysis_version"),
        Index("idx_gemstone_analysis_needs_review", "needs_review"),
    )


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Create parent directories for file-based SQLite targets."""

    parent = path.parent
    if parent and not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = is_sqlite_url(normalized)

        engine_kwargs: dict[str, Any] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database not in {":memory:"}:
                _ensure_parent_directory(Path(sa_url.database))
            # Sessions are opened from worker threads via asyncio.to_thread.
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:  # type: ignore[override]
                """Configure SQLite for concurrent access and enforce foreign keys."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                    cursor.execute("PRAGMA foreign_keys = ON")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Concurrent workers may race on CREATE TABLE for a fresh SQLite file.
            message = str(exc).lower()
            if "already exists" in message:
                LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_primary_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the primary database."""

    return Session(get_engine(target))


def session_factory(target: str | Path) -> SessionFactory:
    """Return a zero-argument callable producing sessions bound to ``target``."""

    engine = get_engine(target)

    def _open() -> Session:
        return Session(engine)

    return _open


__all__ = [
    "AnalysisRecordRow",
    "Base",
    "Gemstone",
    "GemstoneAssetRow",
    "SessionFactory",
    "dialect_insert",
    "get_engine",
    "open_primary_session",
    "session_factory",
]
