"""Configuration management for activity notes."""

from datetime import date
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ACTIVITY_DATA_SESSION = "activity-data"
CHART_GENERATION_SESSION = "chart-generation"


class ToolServerConfig(BaseModel):
    """Configuration for a single MCP tool server."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    namespace: str


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Scheduling
    poll_interval_minutes: int = Field(default=30, gt=0)

    # Timeouts
    adapter_timeout_seconds: float = Field(default=60.0, gt=0)
    connect_timeout_seconds: float = Field(default=30.0, gt=0)
    analysis_timeout_seconds: float = Field(default=300.0, gt=0)
    write_timeout_seconds: float = Field(default=30.0, gt=0)

    # Activity source
    activity_source: str = "command"
    adapter_command: str = ""
    adapter_limit: int = Field(default=20, gt=0)

    # Strava
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_access_token: str = ""
    strava_refresh_token: str = ""
    strava_token_expires_at: int = 0
    strava_lookback_hours: int = Field(default=24, ge=0)

    # OpenAI
    openai_api_key: str = ""
    analysis_model: str = "gpt-4o-mini"
    max_tool_rounds: int = Field(default=8, gt=0)

    # Notes
    vault_dir: Path = Path("vault")
    note_path_template: str = "Daily/{date:%Y-%m-%d}.md"
    accept_partial_results: bool = True
    chart_namespace: str = "charts"

    # Paths
    config_dir: Path = Path("config")
    data_dir: Path = Path("data")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def watermark_path(self) -> Path:
        return self.data_dir / "watermark.json"

    @property
    def strava_ledger_path(self) -> Path:
        return self.data_dir / "strava_reported.json"


def load_pipeline_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load pipeline configuration from YAML file."""
    if config_path is None:
        config_path = Path("config/pipeline.yaml")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def get_tool_servers(config: dict[str, Any]) -> dict[str, ToolServerConfig]:
    """Extract tool server definitions keyed by session name."""
    servers = {}
    for name, server_data in (config.get("tool_servers") or {}).items():
        servers[name] = ToolServerConfig(name=name, **server_data)
    return servers


def resolve_note_path(template: str, day: date) -> str:
    """Resolve the note path template for a given day."""
    return template.format(date=day)
