"""Configuration loader and typed settings for the gemstone media analysis pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

CUT_DETECTION = "cut_detection"
COLOR_DETECTION = "color_detection"
PRIMARY_IMAGE_SELECTION = "primary_image_selection"
LABEL_EXTRACTION = "label_extraction"
MEASUREMENT_EXTRACTION = "measurement_extraction"

ALL_TASK_KINDS: tuple[str, ...] = (
    CUT_DETECTION,
    COLOR_DETECTION,
    PRIMARY_IMAGE_SELECTION,
    LABEL_EXTRACTION,
    MEASUREMENT_EXTRACTION,
)

DEFAULT_CUTS: tuple[str, ...] = (
    "round",
    "princess",
    "emerald",
    "cushion",
    "oval",
    "pear",
    "marquise",
    "asscher",
    "radiant",
    "heart",
    "trillion",
    "baguette",
    "cabochon",
)

DEFAULT_COLORS: tuple[str, ...] = (
    "red",
    "pink",
    "orange",
    "yellow",
    "green",
    "blue",
    "purple",
    "brown",
    "black",
    "white",
    "gray",
    "colorless",
    "smoky",
    "amber",
    "violet",
    "teal",
    "coral",
    "peach",
    "mint",
    "multi-color",
)

DEFAULT_ALIASES: dict[str, str] = {
    "grey": "gray",
    "clear": "colorless",
    "transparent": "colorless",
    "multicolor": "multi-color",
    "multicolour": "multi-color",
    "multi color": "multi-color",
    "navette": "marquise",
    "teardrop": "pear",
    "triangle": "trillion",
    "trilliant": "trillion",
    "brilliant": "round",
    "round brilliant": "round",
    "octagon": "emerald",
}

DEFAULT_PLACEHOLDER_PATTERNS: tuple[str, ...] = (
    r"lorem ipsum",
    r"\b(?:TODO|TBD|FIXME)\b",
    r"\[(?:insert|placeholder)[^\]]*\]",
    r"\{\{[^}]*\}\}",
    r"as an ai language model",
    r"unable to determine",
)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection target for catalog tables and analysis records."""

    primary_url: str = "sqlite:///data/gem_insight.db"


@dataclass(frozen=True)
class StorageConfig:
    """Media store access and storage-side retry policy."""

    backend: str = "local"
    local_root: str = "data/media"
    base_url: str | None = None
    token_env: str = "GEM_INSIGHT_STORAGE_TOKEN"
    timeout_s: float = 30.0
    write_attempts: int = 3
    retry_backoff_s: float = 0.5


@dataclass(frozen=True)
class MediaConfig:
    """Normalization limits for images and videos."""

    max_image_edge_px: int = 2048
    image_format: str = "WEBP"
    image_quality: int = 85
    max_file_bytes: int = 50 * 1024 * 1024
    video_max_bitrate_bps: int = 4_000_000
    video_crf: int = 23
    video_preset: str = "slow"
    audio_bitrate: str = "128k"
    thumbnail_offset_s: float = 1.0
    thumbnail_max_edge_px: int = 1024
    transcode_timeout_s: float = 300.0
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    concurrency: int = 2


@dataclass(frozen=True)
class VisionTaskConfig:
    """Per-task model choice, image budget and timeout."""

    model: str = "gpt-4o-mini"
    max_images: int = 3
    timeout_ms: int = 30_000
    max_tokens: int = 1000
    temperature: float = 0.2
    image_detail: str = "high"

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


def _default_vision_tasks() -> dict[str, VisionTaskConfig]:
    return {
        CUT_DETECTION: VisionTaskConfig(max_images=3, temperature=0.2),
        COLOR_DETECTION: VisionTaskConfig(max_images=10, temperature=0.2),
        PRIMARY_IMAGE_SELECTION: VisionTaskConfig(max_images=10, max_tokens=2000, temperature=0.1),
        LABEL_EXTRACTION: VisionTaskConfig(model="gpt-4o", max_images=4, max_tokens=1500, temperature=0.0),
        MEASUREMENT_EXTRACTION: VisionTaskConfig(model="gpt-4o", max_images=4, max_tokens=1000, temperature=0.0),
    }


def _default_pricing() -> dict[str, tuple[float, float]]:
    # USD per 1k tokens: (input, output).
    return {
        "gpt-4o-mini": (0.00015, 0.0006),
        "gpt-4o": (0.005, 0.015),
        "gpt-4-turbo": (0.01, 0.03),
    }


@dataclass(frozen=True)
class VisionConfig:
    """Vision capability endpoint, retry policy and per-task settings."""

    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"
    max_attempts: int = 2
    retry_backoff_s: float = 1.0
    tasks: dict[str, VisionTaskConfig] = field(default_factory=_default_vision_tasks)
    pricing: dict[str, tuple[float, float]] = field(default_factory=_default_pricing)

    def task(self, kind: str) -> VisionTaskConfig:
        """Return the settings for ``kind``, falling back to defaults for unknown kinds."""

        return self.tasks.get(kind) or _default_vision_tasks().get(kind) or VisionTaskConfig()


def _default_tolerances() -> dict[str, float]:
    return {"weight_carats": 0.05, "length_mm": 0.1, "width_mm": 0.1, "depth_mm": 0.1}


def _default_boosts() -> dict[str, float]:
    return {
        "clean_subject": 0.2,
        "acceptable_subject": 0.1,
        "unknown": 0.0,
        "certificate": -0.2,
        "label": -0.2,
        "measurement_tool": -0.2,
        "packaging": -0.2,
    }


@dataclass(frozen=True)
class ConsolidationConfig:
    """Thresholds used when merging multi-source readings and ranking images."""

    disagreement_threshold: float = 0.6
    conflict_discount: float = 0.8
    partial_failure_discount: float = 0.9
    numeric_tolerances: dict[str, float] = field(default_factory=_default_tolerances)
    classification_boosts: dict[str, float] = field(default_factory=_default_boosts)
    measurement_tool_score_cap: float = 0.4
    min_primary_score: float = 0.5


@dataclass(frozen=True)
class ReviewConfig:
    """Rule parameters for the needs-review flag."""

    low_confidence_threshold: float = 0.6
    wall_clock_ceiling_ms: int = 30_000
    required_properties: tuple[str, ...] = ("cut", "color")
    placeholder_patterns: tuple[str, ...] = DEFAULT_PLACEHOLDER_PATTERNS


@dataclass(frozen=True)
class BatchConfig:
    """Rate limiting for batch sweeps."""

    concurrency: int = 2
    inter_call_delay_s: float = 1.0


@dataclass(frozen=True)
class PipelineConfig:
    """Orchestrator behavior switches."""

    version: str = "v6"
    enabled_tasks: tuple[str, ...] = ALL_TASK_KINDS
    normalize_videos: bool = True
    text_tasks_without_photos: bool = True


@dataclass(frozen=True)
class QueueConfig:
    """Celery worker and queue configuration."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    analysis_queue: str = "analysis"
    default_concurrency: int = 2


@dataclass(frozen=True)
class VocabularyConfig:
    """Enumerated vocabularies that detections are validated against."""

    cuts: tuple[str, ...] = DEFAULT_CUTS
    colors: tuple[str, ...] = DEFAULT_COLORS
    aliases: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ALIASES))


@dataclass(frozen=True)
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    vocabulary: VocabularyConfig = field(default_factory=VocabularyConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - installed flat
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()
    if cwd_candidate == repo_candidate:
        return [cwd_candidate]
    return [cwd_candidate, repo_candidate]


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("GEM_INSIGHT_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _coerce(value: Any, default: Any) -> tuple[bool, Any]:
    """Return ``(accepted, value)`` when ``value`` matches the type of ``default``."""

    if isinstance(default, bool):
        return isinstance(value, bool), value
    if isinstance(default, int) and not isinstance(default, bool):
        if isinstance(value, int) and not isinstance(value, bool):
            return True, value
        return False, None
    if isinstance(default, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return True, float(value)
        return False, None
    if isinstance(default, str) or default is None:
        return isinstance(value, str), value
    if isinstance(default, tuple):
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return True, tuple(value)
        return False, None
    return False, None


def _apply_scalars(section: Any, raw: Mapping[str, Any]) -> Any:
    """Return ``section`` with every well-typed scalar/list key from ``raw`` applied."""

    overrides: dict[str, Any] = {}
    for item in fields(section):
        if item.name not in raw:
            continue
        accepted, value = _coerce(raw[item.name], getattr(section, item.name))
        if accepted:
            overrides[item.name] = value
    return replace(section, **overrides) if overrides else section


def _float_mapping(raw: Any, base: dict[str, float]) -> dict[str, float]:
    merged = dict(base)
    for key, value in _as_dict(raw).items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            merged[str(key)] = float(value)
    return merged


def _load_vision(raw: dict[str, Any], base: VisionConfig) -> VisionConfig:
    vision = _apply_scalars(base, raw)

    tasks = dict(vision.tasks)
    for kind, task_raw in _as_dict(raw.get("tasks")).items():
        if kind not in ALL_TASK_KINDS or not isinstance(task_raw, dict):
            continue
        tasks[kind] = _apply_scalars(vision.task(kind), task_raw)

    pricing = dict(vision.pricing)
    for model, price_raw in _as_dict(raw.get("pricing")).items():
        price = _as_dict(price_raw)
        input_price = price.get("input_per_1k")
        output_price = price.get("output_per_1k")
        if isinstance(input_price, (int, float)) and isinstance(output_price, (int, float)):
            pricing[str(model)] = (float(input_price), float(output_price))

    return replace(vision, tasks=tasks, pricing=pricing)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    The loader is deliberately defensive: if the file is missing or malformed,
    or a key carries a value of the wrong type, the default is kept.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        try:
            raw = yaml.safe_load(fp) or {}
        except yaml.YAMLError:
            return settings

    if not isinstance(raw, dict):
        return settings

    consolidation_raw = _as_dict(raw.get("consolidation"))
    consolidation = _apply_scalars(settings.consolidation, consolidation_raw)
    consolidation = replace(
        consolidation,
        numeric_tolerances=_float_mapping(consolidation_raw.get("numeric_tolerances"), consolidation.numeric_tolerances),
        classification_boosts=_float_mapping(
            consolidation_raw.get("classification_boosts"), consolidation.classification_boosts
        ),
    )

    vocabulary_raw = _as_dict(raw.get("vocabulary"))
    vocabulary = _apply_scalars(settings.vocabulary, vocabulary_raw)
    aliases_raw = _as_dict(vocabulary_raw.get("aliases"))
    if aliases_raw:
        aliases = dict(vocabulary.aliases)
        aliases.update({str(key): str(value) for key, value in aliases_raw.items() if isinstance(value, str)})
        vocabulary = replace(vocabulary, aliases=aliases)

    pipeline = _apply_scalars(settings.pipeline, _as_dict(raw.get("pipeline")))
    unknown_tasks = [kind for kind in pipeline.enabled_tasks if kind not in ALL_TASK_KINDS]
    if unknown_tasks:
        pipeline = replace(pipeline, enabled_tasks=tuple(kind for kind in pipeline.enabled_tasks if kind in ALL_TASK_KINDS))

    return Settings(
        databases=_apply_scalars(settings.databases, _as_dict(raw.get("databases"))),
        storage=_apply_scalars(settings.storage, _as_dict(raw.get("storage"))),
        media=_apply_scalars(settings.media, _as_dict(raw.get("media"))),
        vision=_load_vision(_as_dict(raw.get("vision")), settings.vision),
        consolidation=consolidation,
        review=_apply_scalars(settings.review, _as_dict(raw.get("review"))),
        batch=_apply_scalars(settings.batch, _as_dict(raw.get("batch"))),
        pipeline=pipeline,
        queues=_apply_scalars(settings.queues, _as_dict(raw.get("queues"))),
        vocabulary=vocabulary,
    )


__all__ = [
    "ALL_TASK_KINDS",
    "BatchConfig",
    "COLOR_DETECTION",
    "CUT_DETECTION",
    "ConsolidationConfig",
    "DatabaseConfig",
    "LABEL_EXTRACTION",
    "MEASUREMENT_EXTRACTION",
    "MediaConfig",
    "PRIMARY_IMAGE_SELECTION",
    "PipelineConfig",
    "QueueConfig",
    "ReviewConfig",
    "Settings",
    "StorageConfig",
    "VisionConfig",
    "VisionTaskConfig",
    "VocabularyConfig",
    "load_settings",
]
