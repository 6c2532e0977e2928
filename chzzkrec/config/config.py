"""Configuration management for the Chzzk recorder agent.

This module defines a Pydantic model representing the application
settings and implements functions to load them from a YAML file.  Unlike
the state documents, the settings file is a hard startup precondition: if
it cannot be found the agent refuses to start.

Configuration values include:
 - ``save_directory``: Directory where live captures and VODs are saved.
 - ``state_directory``: Directory holding the roster, registries and credential.
 - ``check_interval_sec``: Interval of the broad discovery cycle.
 - ``dl_vod_concurrency``: Maximum number of concurrent VOD downloads.
 - ``check_user_vod_minutes``: Staggered delays for VOD re-checks.
 - ``vod_fetch_mode`` / ``use_live_ffmpeg_output``: strategy selectors.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional, Tuple

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator


class SettingsNotFoundError(FileNotFoundError):
    """Raised when no settings file exists at any of the resolved locations."""


class AppSettings(BaseModel):
    """Pydantic model describing application settings."""

    save_directory: Path = Field(default=Path("recordings"),
                                 description="Directory for live captures and VODs")
    state_directory: Path = Field(default=Path("model"),
                                  description="Directory for persisted state documents")
    history_db_path: Optional[Path] = Field(default=None,
                                            description="SQLite session history, defaults into state_directory")
    check_interval_sec: int = Field(default=180,
                                    description="Broad discovery cycle interval in seconds")
    filename_template: str = Field(default="{username}_{year}{month}{day}_{hr}{min}{sec}_{liveNum}",
                                   description="File stem template for live captures")
    filename_vod_template: str = Field(default="{username}_{year}{month}{day}_{vodNum}_{duration}",
                                       description="File stem template for VOD downloads")
    use_live_ffmpeg_output: bool = Field(default=False,
                                         description="Pipe live captures through ffmpeg instead of writing directly")
    proactive_search: bool = Field(default=True,
                                   description="Probe creators whose recording is disabled")
    dl_vod_concurrency: int = Field(default=1,
                                    description="Maximum number of concurrent VOD downloads")
    check_user_vod_minutes: List[int] = Field(default_factory=lambda: [60, 120, 180],
                                              description="Minutes after going offline to check for new VODs")
    vod_fetch_mode: Literal["public", "authenticated"] = Field(default="public",
                                                               description="VOD metadata fetch strategy")
    adult_content: Literal["authenticated", "skip"] = Field(default="authenticated",
                                                            description="How adult content is handled")
    search_tags: List[str] = Field(default_factory=lambda: ["라이브 아트", "아트"],
                                   description="Tags queried by the broad discovery cycle")
    state_poll_interval_sec: float = Field(default=1.0,
                                           description="Polling period of the state file watcher")
    state_debounce_sec: float = Field(default=0.5,
                                      description="Window in which bursts of file changes collapse")
    state_empty_read_retries: int = Field(default=3,
                                          description="Retries before accepting an empty reload")
    state_empty_read_delay_sec: float = Field(default=0.2,
                                              description="Delay between empty reload retries")
    log_level: str = Field(default="INFO", description="Minimum log level")

    @field_validator("dl_vod_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("dl_vod_concurrency must be at least 1")
        return v

    @field_validator("check_interval_sec")
    @classmethod
    def validate_check_interval(cls, v: int) -> int:
        if v < 10:
            raise ValueError("check_interval_sec must be at least 10 seconds")
        return v

    @field_validator("check_user_vod_minutes")
    @classmethod
    def validate_vod_minutes(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("check_user_vod_minutes must not be empty")
        if any(m <= 0 for m in v):
            raise ValueError("check_user_vod_minutes must be positive")
        return sorted(v)

    @property
    def history_path(self) -> Path:
        return self.history_db_path or self.state_directory / "history.db"


logger = structlog.get_logger(__name__)


def _resolve_config_file(path: Optional[str] = None) -> Path:
    """Return the settings file path or raise if none exists."""
    if path:
        candidate = Path(path).expanduser()
        if candidate.exists():
            return candidate
        raise SettingsNotFoundError(f"settings file not found: {candidate}")
    project_cfg = Path.cwd() / "config.yaml"
    if project_cfg.exists():
        return project_cfg
    raise SettingsNotFoundError(f"settings file not found: {project_cfg}")


def load_config(path: Optional[str] = None) -> Tuple[AppSettings, Path]:
    """Loads settings from a YAML file, returning the settings and path used."""
    config_file = _resolve_config_file(path)
    data: dict = {}
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.warning("failed to parse config file", config_path=str(config_file), error=str(e))
    logger.info("loaded configuration", config_path=str(config_file))
    return AppSettings(**data), config_file
