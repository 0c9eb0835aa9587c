"""Pydantic models for configuration and project variant settings."""

import re
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import PlanningError

VARIANT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
RESERVED_VARIANT_NAMES = {"original"}


class DatabaseConfig(BaseModel):
    """Durable job store settings."""

    url: str = Field(
        default="sqlite:///pixelqueue.db",
        description="sqlite:///path for the local store, postgresql://... for the shared store",
    )
    busy_timeout_ms: int = Field(
        default=5000, gt=0, description="How long status updates wait for a write lock"
    )
    claim_timeout_ms: int = Field(
        default=50,
        ge=0,
        description="How long a claim waits for the write lock before giving up with no rows",
    )


class StorageConfig(BaseModel):
    """Object store settings."""

    backend: Literal["local", "s3"] = Field(default="local", description="Object store backend")
    local_root: str = Field(default="storage", description="Root directory for the local backend")
    bucket: Optional[str] = Field(default=None, description="S3 bucket name")
    endpoint_url: Optional[str] = Field(
        default=None, description="Custom S3 endpoint (MinIO, R2, localstack)"
    )
    region: str = Field(default="us-east-1", description="S3 region")
    presign_ttl_s: int = Field(default=3600, gt=0, description="Default presigned URL lifetime")


class WorkerConfig(BaseModel):
    """Worker pool and recovery sweep settings."""

    concurrency: int = Field(default=1, ge=1, description="Max jobs in flight per process")
    poll_interval_s: float = Field(
        default=5.0, gt=0.0, description="Sleep between polls when idle or saturated"
    )
    stale_after_s: int = Field(
        default=900,
        gt=0,
        description="A processing job claimed longer ago than this is presumed abandoned",
    )
    sweep_interval_s: int = Field(
        default=300, ge=0, description="Seconds between recovery sweeps (0 = startup only)"
    )


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["database"]["url"] = cli_args["db"]
        if cli_args.get("concurrency") is not None:
            config_dict["worker"]["concurrency"] = cli_args["concurrency"]
        if cli_args.get("poll_interval") is not None:
            config_dict["worker"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("stale_after") is not None:
            config_dict["worker"]["stale_after_s"] = cli_args["stale_after"]
        if cli_args.get("storage") is not None:
            config_dict["storage"]["backend"] = cli_args["storage"]
        if cli_args.get("storage_root") is not None:
            config_dict["storage"]["local_root"] = cli_args["storage_root"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)


# --- Project variant settings ---


class Fit(str, Enum):
    """How the source aspect ratio is reconciled with a target box."""

    CONTAIN = "contain"  # Fit inside the box, no crop
    COVER = "cover"  # Fill the box, center-crop the overflow axis
    STRETCH = "stretch"  # Exact box, aspect ratio ignored


class OutputFormat(str, Enum):
    """Target encodings. ORIGINAL keeps the source format."""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    AVIF = "avif"
    ORIGINAL = "original"


class VariantDefinition(BaseModel):
    """Strict form of one entry in a project's variant settings."""

    format: OutputFormat = Field(default=OutputFormat.ORIGINAL)
    quality: int = Field(default=80, ge=1, le=100, description="Encoder quality (1-100)")
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    max_width: Optional[int] = Field(default=None, gt=0, description="Shrink-only bound")
    max_height: Optional[int] = Field(default=None, gt=0, description="Shrink-only bound")
    fit: Fit = Field(default=Fit.CONTAIN)

    class Config:
        """Pydantic configuration."""

        extra = "forbid"

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "jpg":
                return "jpeg"
        return v

    @model_validator(mode="after")
    def check_dimensions(self) -> "VariantDefinition":
        has_box = self.width is not None or self.height is not None
        has_max = self.max_width is not None or self.max_height is not None

        if has_box and has_max:
            raise ValueError("max_width/max_height cannot be combined with width/height")

        if self.fit != Fit.CONTAIN:
            if has_max:
                raise ValueError("max_width/max_height are only valid with fit 'contain'")
            if self.width is None or self.height is None:
                raise ValueError(
                    f"fit '{self.fit.value}' needs both width and height; "
                    "a single dimension is only valid with fit 'contain'"
                )
        return self


class ProjectSettings(BaseModel):
    """Validated project settings document."""

    variants: Dict[str, VariantDefinition] = Field(default_factory=dict)

    @field_validator("variants")
    @classmethod
    def check_variant_names(cls, v: Dict[str, VariantDefinition]) -> Dict[str, VariantDefinition]:
        for name in v:
            if name in RESERVED_VARIANT_NAMES:
                raise ValueError(f"variant name '{name}' is reserved")
            if not VARIANT_NAME_RE.match(name):
                raise ValueError(
                    f"variant name '{name}' must be lowercase letters, digits, '-' or '_'"
                )
        return v

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> "ProjectSettings":
        """Validate a loosely-typed settings document.

        Accepts either ``{"variants": {...}}`` or a bare ``{name: definition}``
        mapping. Raises PlanningError describing every problem found.
        """
        if document is None:
            return cls()
        if isinstance(document, ProjectSettings):
            return document
        if not isinstance(document, dict):
            raise PlanningError(f"settings must be a mapping, got {type(document).__name__}")

        data = document if "variants" in document else {"variants": document}
        try:
            return cls(**data)
        except ValidationError as e:
            raise PlanningError(describe_validation_error(e)) from e


def describe_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic ValidationError into one readable line."""
    parts = []
    for err in error.errors():
        loc = [str(p) for p in err["loc"]]
        if len(loc) >= 2 and loc[0] == "variants":
            where = f"variant '{loc[1]}'"
            if len(loc) > 2:
                where += f" field '{'.'.join(loc[2:])}'"
        else:
            where = ".".join(loc) or "settings"
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{where}: {msg}")
    return "; ".join(parts)


class VariantTask(BaseModel):
    """One planned rendition: what to produce and where to put it."""

    name: str = Field(..., description="Variant name from project settings")
    format: OutputFormat = Field(..., description="Target encoding (ORIGINAL keeps source format)")
    target_w: int = Field(..., description="Output width in pixels; transcode() rejects non-positive sizes")
    target_h: int = Field(..., description="Output height in pixels")
    fit: Fit = Field(default=Fit.CONTAIN, description="Fit mode")
    quality: int = Field(default=80, ge=1, le=100, description="Encoder quality")
    storage_key: str = Field(..., description="Object-store key for the encoded bytes")
    content_type: str = Field(..., description="MIME type of the encoded bytes")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class ImageMetadata(BaseModel):
    """Dimensions and format of a decoded source image (orientation applied)."""

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    format: str = Field(description="Pillow format name, e.g. JPEG, PNG, WEBP, AVIF")
