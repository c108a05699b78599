"""Onboarding configuration loader."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import (
    ALLOWED_MIME_TYPES,
    DEFAULT_ATTACHMENT_TAG,
    MAX_ATTACHMENTS,
    MAX_FILE_SIZE,
)


@dataclass
class ApiConfig:
    """Resource API connection settings."""

    base_url: str = "http://localhost:3000/api"
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class UploadConfig:
    """Attachment upload settings."""

    concurrency: int = 3
    allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES
    default_tag: str = DEFAULT_ATTACHMENT_TAG
    max_attachments: int = MAX_ATTACHMENTS
    max_file_size: int = MAX_FILE_SIZE


@dataclass
class OnboardingConfig:
    """Main configuration for property onboarding."""

    api: ApiConfig = field(default_factory=ApiConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)

    # Durable draft snapshot
    snapshot_path: str = ".onboarding/state.sqlite"
    draft_key: str = "property-draft"

    log_level: str = "INFO"

    @classmethod
    def load(cls, config_path: str = ".onboarding/config.yaml") -> "OnboardingConfig":
        """Load config from YAML file.

        Args:
            config_path: Path to config file (relative or absolute)

        Returns:
            Loaded configuration, or defaults if the file does not exist
        """
        path = Path(config_path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        api_data = data.get("api", {})
        api = ApiConfig(
            base_url=api_data.get("base_url", ApiConfig.base_url),
            timeout=float(api_data.get("timeout", ApiConfig.timeout)),
            headers=dict(api_data.get("headers") or {}),
        )

        upload_data = data.get("upload", {})
        upload = UploadConfig(
            concurrency=int(upload_data.get("concurrency", 3)),
            allowed_mime_types=tuple(
                upload_data.get("allowed_mime_types", ALLOWED_MIME_TYPES)
            ),
            default_tag=upload_data.get("default_tag", DEFAULT_ATTACHMENT_TAG),
            max_attachments=int(upload_data.get("max_attachments", MAX_ATTACHMENTS)),
            max_file_size=int(upload_data.get("max_file_size", MAX_FILE_SIZE)),
        )

        storage_data = data.get("storage", {})
        logging_data = data.get("logging", {})

        return cls(
            api=api,
            upload=upload,
            snapshot_path=storage_data.get("snapshot_path", ".onboarding/state.sqlite"),
            draft_key=storage_data.get("draft_key", "property-draft"),
            log_level=str(logging_data.get("level", "INFO")).upper(),
        )
