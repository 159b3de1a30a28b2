"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from genqueue.orchestrator.state import TaskType


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


DEFAULT_MAX_PER_STAGE = 2


def _default_max_per_stage() -> Dict[TaskType, int]:
    return {task_type: DEFAULT_MAX_PER_STAGE for task_type in TaskType}


def _default_max_workers() -> Dict[TaskType, int]:
    return {TaskType.IMAGES: 4, TaskType.PROMPTS: 3}


def _default_stage_dependencies() -> Dict[TaskType, TaskType]:
    # images are generated from prompts output, subtitles are extracted from audio
    return {TaskType.IMAGES: TaskType.PROMPTS, TaskType.SUBTITLES: TaskType.AUDIO}


def _default_stage_requirements() -> Dict[TaskType, TaskType]:
    return {TaskType.SUBTITLES: TaskType.AUDIO}


def _default_stage_priorities() -> Dict[TaskType, int]:
    return {
        TaskType.PROMPTS: 0,
        TaskType.AUDIO: 0,
        TaskType.IMAGES: 5,
        TaskType.SUBTITLES: 5,
    }


class QueueConfig(BaseModel):
    """Scheduler ceilings and dispatch parameters.

    max_projects and max_per_stage bound how many tasks are processing at once;
    max_workers bounds fan-out inside a single task (e.g. N images in parallel).
    """

    max_projects: int = Field(default=2, ge=1)
    max_per_stage: Dict[TaskType, int] = Field(default_factory=_default_max_per_stage)
    max_workers: Dict[TaskType, int] = Field(default_factory=_default_max_workers)
    max_attempts: int = Field(default=3, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    stage_dependencies: Dict[TaskType, TaskType] = Field(
        default_factory=_default_stage_dependencies
    )
    stage_requirements: Dict[TaskType, TaskType] = Field(
        default_factory=_default_stage_requirements
    )
    stage_priorities: Dict[TaskType, int] = Field(default_factory=_default_stage_priorities)
    # Per-stage executor timeout in seconds; stages not listed never time out
    stage_timeouts: Dict[TaskType, float] = Field(default_factory=dict)
    stats_window_hours: int = Field(default=24, ge=1)
    recover_orphans_on_start: bool = True

    @field_validator("max_per_stage", mode="after")
    @classmethod
    def fill_stage_ceilings(cls, v):
        """Fill stages missing from the map with the default ceiling."""
        filled = _default_max_per_stage()
        filled.update(v)
        for task_type, ceiling in filled.items():
            if ceiling < 1:
                raise ValueError(f"max_per_stage[{task_type.value}] must be >= 1, got {ceiling}")
        return filled

    @field_validator("max_workers", mode="after")
    @classmethod
    def check_worker_ceilings(cls, v):
        for task_type, ceiling in v.items():
            if ceiling < 1:
                raise ValueError(f"max_workers[{task_type.value}] must be >= 1, got {ceiling}")
        return v

    @field_validator("stage_timeouts", mode="after")
    @classmethod
    def check_timeouts(cls, v):
        for task_type, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"stage_timeouts[{task_type.value}] must be > 0, got {seconds}")
        return v

    @model_validator(mode="after")
    def check_dependency_edges(self):
        """Reject self-edges; cycles are detected by the graph resolver."""
        for stage, predecessor in self.stage_dependencies.items():
            if stage == predecessor:
                raise ValueError(f"Stage {stage.value} cannot depend on itself")
        return self

    def stage_ceiling(self, task_type: TaskType) -> int:
        return self.max_per_stage.get(TaskType(task_type), DEFAULT_MAX_PER_STAGE)

    def worker_ceiling(self, task_type: TaskType) -> int:
        """Intra-task worker ceiling; stages without an override run one worker."""
        return self.max_workers.get(TaskType(task_type), 1)

    def stage_timeout(self, task_type: TaskType) -> Optional[float]:
        return self.stage_timeouts.get(TaskType(task_type))


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///genqueue.db"


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class LoggingConfig(BaseModel):
    """Log level and console handler selection."""

    level: str = "INFO"
    rich: bool = True

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        """Accept lowercase level names from YAML/env."""
        if isinstance(v, str):
            return v.upper()
        return v


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: GENQUEUE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="GENQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Stage executor factories as "module:attribute" import paths
    executors: Dict[TaskType, str] = Field(default_factory=dict)

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
