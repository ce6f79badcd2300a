"""Read-only lookup of a gemstone's media assets and declared metadata."""

from __future__ import annotations

from sqlalchemy import select

from gem_insight.db import Gemstone, GemstoneAssetRow, SessionFactory
from gem_insight.errors import NotFound
from gem_insight.models import AssetKind, AssetRole, DeclaredMetadata, GemstoneAsset, ResolvedGemstone
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "resolver"})


def asset_from_row(row: GemstoneAssetRow) -> GemstoneAsset:
    """Convert an ORM asset row into the immutable domain type."""

    try:
        role = AssetRole(row.role)
    except ValueError:
        role = AssetRole.PHOTO
    return GemstoneAsset(
        asset_id=row.asset_id,
        gemstone_id=row.gemstone_id,
        kind=AssetKind(row.kind),
        locator=row.locator,
        ordinal=row.ordinal,
        is_primary=bool(row.is_primary),
        original_filename=row.original_filename,
        role=role,
        thumbnail_locator=row.thumbnail_locator,
        duration_seconds=row.duration_seconds,
    )


def declared_from_row(row: Gemstone) -> DeclaredMetadata:
    def _text(value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    return DeclaredMetadata(
        cut=_text(row.cut),
        color=_text(row.color),
        weight_carats=row.weight_carats,
        length_mm=row.length_mm,
        width_mm=row.width_mm,
        depth_mm=row.depth_mm,
    )


class AssetResolver:
    """Resolve a gemstone identifier into its ordered assets and declared snapshot."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def resolve(self, gemstone_id: str) -> ResolvedGemstone:
        """Return assets ordered by ordinal; raise :class:`NotFound` for unknown ids."""

        with self._session_factory() as session:
            gemstone = session.get(Gemstone, gemstone_id)
            if gemstone is None:
                raise NotFound("gemstone", gemstone_id)

            rows = session.execute(
                select(GemstoneAssetRow)
                .where(GemstoneAssetRow.gemstone_id == gemstone_id)
                .order_by(GemstoneAssetRow.ordinal, GemstoneAssetRow.asset_id)
            ).scalars()
            assets = tuple(asset_from_row(row) for row in rows)
            declared = declared_from_row(gemstone)

        LOGGER.debug(
            "gemstone_resolved",
            extra={
                "gemstone_id": gemstone_id,
                "asset_count": len(assets),
                "declared": declared.declared_properties(),
            },
        )
        return ResolvedGemstone(gemstone_id=gemstone_id, assets=assets, declared=declared)

    def list_gemstone_ids(self) -> list[str]:
        with self._session_factory() as session:
            return list(session.execute(select(Gemstone.gemstone_id).order_by(Gemstone.gemstone_id)).scalars())


__all__ = ["AssetResolver", "asset_from_row", "declared_from_row"]
