"""Engine configuration."""

import os
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

ENV_PREFIX = "IMAGES_WORKFLOW_"

DEFAULT_ALLOWED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp")
DEFAULT_ALLOWED_CONTENT_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/webp",
)


class EngineConfig(BaseModel):
    """Configuration shared by every workflow component."""

    bucket: str = "images-workflow"
    originals_prefix: str = "originals"
    derived_prefix: str = "derived"

    max_upload_bytes: int = 10 * 1024 * 1024
    allowed_extensions: Tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS
    allowed_content_types: Tuple[str, ...] = DEFAULT_ALLOWED_CONTENT_TYPES

    thumbnail_max_dimension: int = 200
    preview_max_dimension: int = 400
    preview_blur_radius: float = 10.0
    thumbnail_quality: int = Field(default=85, ge=1, le=95)
    preview_quality: int = Field(default=60, ge=1, le=95)

    max_retries: int = 3
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=300.0, ge=0)

    share_ttl_days: int = 30
    reconcile_after_seconds: float = Field(default=900.0, ge=0)
    expire_interval_seconds: float = Field(default=3600.0, ge=0)
    reconcile_interval_seconds: float = Field(default=300.0, ge=0)

    worker_count: int = 4
    metrics_history_size: int = 1000
    queue_prefix: str = "images-workflow-"
    database_path: str = ":memory:"
    notification_topic_arn: Optional[str] = None
    debug: bool = False

    @field_validator(
        "max_upload_bytes",
        "thumbnail_max_dimension",
        "preview_max_dimension",
        "max_retries",
        "share_ttl_days",
        "worker_count",
        "metrics_history_size",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("preview_blur_radius")
    @classmethod
    def _radius_not_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("blur radius cannot be negative")
        return value

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return tuple(
            ext if ext.startswith(".") else f".{ext}"
            for ext in (e.strip().lower() for e in value)
            if ext
        )

    @field_validator("allowed_content_types", mode="before")
    @classmethod
    def _normalize_content_types(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return tuple(ct.strip().lower() for ct in value if ct.strip())

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> "EngineConfig":
        """
        Build a config from IMAGES_WORKFLOW_<FIELD> environment variables.

        Explicit keyword overrides win over the environment.

        Raises:
            ConfigurationError: If a value fails validation
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid engine configuration: {exc}") from exc
