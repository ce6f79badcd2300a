"""Upsert of analysis records and the primary-image flag, in one transaction."""

from __future__ import annotations

import json
import time
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gem_insight.db import AnalysisRecordRow, GemstoneAssetRow, SessionFactory, dialect_insert
from gem_insight.errors import PersistenceFailed
from gem_insight.models import AnalysisRecord
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "persistence"})


def _record_values(record: AnalysisRecord, now: float, primary_asset_id: str | None) -> dict[str, Any]:
    recommendation = record.primary_recommendation
    telemetry = record.telemetry
    failures = {
        "media": [
            {"asset_id": item.asset.asset_id, "reason": item.reason, "detail": item.detail}
            for item in telemetry.normalization_failures
        ],
        "tasks": dict(telemetry.task_failures),
    }
    return {
        "gemstone_id": record.gemstone_id,
        "pipeline_version": record.pipeline_version,
        "fields_json": json.dumps(
            {prop: extraction.to_dict() for prop, extraction in sorted(record.fields.items())}, ensure_ascii=False
        ),
        "primary_asset_id": primary_asset_id or (recommendation.asset_id if recommendation else None),
        "primary_score": recommendation.score if recommendation else None,
        "primary_rationale": recommendation.rationale if recommendation else None,
        "primary_source": record.primary_source,
        "image_scores_json": json.dumps([item.to_dict() for item in record.image_scores], ensure_ascii=False),
        "needs_review": record.needs_review,
        "review_reasons_json": json.dumps(list(record.review_reasons)),
        "duration_ms": telemetry.duration_ms,
        "cost_usd": telemetry.cost_usd,
        "media_analyzed_json": json.dumps(dict(sorted(telemetry.media_analyzed.items()))),
        "failures_json": json.dumps(failures, ensure_ascii=False),
        "created_at": now,
        "updated_at": now,
    }


class AnalysisRepository:
    """Write and read the current analysis record of a gemstone."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def save(self, record: AnalysisRecord, *, primary_asset_id: str | None = None) -> None:
        """Upsert ``record`` and, when ``primary_asset_id`` is given, make it the only primary.

        Both writes commit or roll back together. Database errors surface as
        :class:`PersistenceFailed`, which callers may retry.
        """

        now = time.time()
        values = _record_values(record, now, primary_asset_id)
        try:
            with self._session_factory() as session, session.begin():
                self._upsert(session, values)
                if primary_asset_id is not None:
                    self._set_primary(session, record.gemstone_id, primary_asset_id)
        except SQLAlchemyError as exc:
            LOGGER.error(
                "analysis_record_persist_error",
                extra={"gemstone_id": record.gemstone_id, "error": str(exc)},
            )
            raise PersistenceFailed(f"failed to persist analysis for {record.gemstone_id}: {exc}") from exc

        LOGGER.info(
            "analysis_record_upserted",
            extra={
                "gemstone_id": record.gemstone_id,
                "pipeline_version": record.pipeline_version,
                "needs_review": record.needs_review,
                "primary_asset_id": primary_asset_id,
            },
        )

    def _upsert(self, session: Session, values: dict[str, Any]) -> None:
        stmt = dialect_insert(session, AnalysisRecordRow).values(**values)
        update_columns = {key: stmt.excluded[key] for key in values if key not in {"gemstone_id", "pipeline_version", "created_at"}}
        stmt = stmt.on_conflict_do_update(index_elements=["gemstone_id", "pipeline_version"], set_=update_columns)
        session.execute(stmt)

    def _set_primary(self, session: Session, gemstone_id: str, asset_id: str) -> None:
        owner = session.execute(
            select(GemstoneAssetRow.gemstone_id).where(GemstoneAssetRow.asset_id == asset_id)
        ).scalar_one_or_none()
        if owner != gemstone_id:
            raise PersistenceFailed(f"asset {asset_id} does not belong to gemstone {gemstone_id}")

        session.execute(
            update(GemstoneAssetRow)
            .where(
                GemstoneAssetRow.gemstone_id == gemstone_id,
                GemstoneAssetRow.asset_id != asset_id,
                GemstoneAssetRow.is_primary.is_(True),
            )
            .values(is_primary=False)
        )
        session.execute(
            update(GemstoneAssetRow).where(GemstoneAssetRow.asset_id == asset_id).values(is_primary=True)
        )

    def load(self, gemstone_id: str, pipeline_version: str) -> dict[str, Any] | None:
        """Return the current record as plain data, or ``None`` if the gemstone was never analysed."""

        with self._session_factory() as session:
            row = session.execute(
                select(AnalysisRecordRow).where(
                    AnalysisRecordRow.gemstone_id == gemstone_id,
                    AnalysisRecordRow.pipeline_version == pipeline_version,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return {
                "gemstone_id": row.gemstone_id,
                "pipeline_version": row.pipeline_version,
                "fields": json.loads(row.fields_json),
                "primary_asset_id": row.primary_asset_id,
                "primary_score": row.primary_score,
                "primary_rationale": row.primary_rationale,
                "primary_source": row.primary_source,
                "image_scores": json.loads(row.image_scores_json),
                "needs_review": row.needs_review,
                "review_reasons": json.loads(row.review_reasons_json),
                "duration_ms": row.duration_ms,
                "cost_usd": row.cost_usd,
                "media_analyzed": json.loads(row.media_analyzed_json),
                "failures": json.loads(row.failures_json),
                "updated_at": row.updated_at,
            }

    def count(self, gemstone_id: str) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count()).select_from(AnalysisRecordRow).where(AnalysisRecordRow.gemstone_id == gemstone_id)
                ).scalar_one()
            )


__all__ = ["AnalysisRepository"]
