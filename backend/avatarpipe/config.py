"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ProvidersConfig(BaseModel):
    """Credentials and endpoints for the external generation providers.

    Keys are optional here so the settings object can always be built;
    validate_configuration() enforces what a given entry point needs.
    """

    heygen_api_key: str = ""
    heygen_base_url: str = "https://api.heygen.com"
    heygen_upload_url: str = "https://upload.heygen.com"
    tts_app_id: str = ""
    tts_access_token: str = ""
    tts_cluster: str = "volcano_tts"
    tts_base_url: str = "https://openspeech.bytedance.com"
    ark_api_key: str = ""
    ark_base_url: str = "https://ark.cn-beijing.volces.com/api/v3"
    runway_api_key: str = ""
    runway_base_url: str = "https://api.dev.runwayml.com"
    runway_api_version: str = "2024-11-06"
    request_timeout: float = 120.0
    submit_retry_attempts: int = 3


class RelocationConfig(BaseModel):
    """S3-compatible bucket used to make local assets publicly reachable."""

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key: str = ""
    secret_key: str = ""
    public_base_url: Optional[str] = None
    key_prefix: str = "avatarpipe"


class PipelineConfig(BaseModel):
    """Polling, admission and quorum parameters."""

    poll_interval: float = 5.0
    max_attempts: dict[str, int] = Field(
        default_factory=lambda: {"image": 60, "audio": 60, "motion": 100, "video": 100}
    )
    concurrency_cap: int = 2
    min_wait_cycles: int = 12
    quorum_max_attempts: int = 100
    auto_download: bool = True
    default_voice_id: str = "zh_male_jieshuonansheng_mars_bigtts"
    video_width: int = 1280
    video_height: int = 720

    def attempts_for(self, kind: str) -> int:
        """Return the poll attempt budget for a task kind."""
        return self.max_attempts.get(kind, 60)


class SessionConfig(BaseModel):
    """Snapshot write-back tuning."""

    debounce_seconds: float = 2.0
    min_write_interval: float = 5.0


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///avatarpipe.db"
    tmp_dir: Path = Path("tmp")

    @field_validator("tmp_dir", mode="before")
    @classmethod
    def convert_tmp_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: AVATARPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="AVATARPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    relocation: RelocationConfig = Field(default_factory=RelocationConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
