"""
Configuration for the phase transition engine and event coordinator.

Environment variables provide defaults; an optional YAML file overrides
them. Coordinator settings are runtime-adjustable through
EventCoordinator.update_config().
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("phaseflow_config")

# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------
STATE_DIR = Path(os.getenv("PHASEFLOW_STATE_DIR", "/tmp/phaseflow"))
NOTIFICATION_LOG_DIR = Path(os.getenv("PHASEFLOW_NOTIFICATION_LOG_DIR", "/tmp/phaseflow/notifications"))
RULES_FILE = os.getenv("PHASEFLOW_RULES_FILE")
CONFIG_FILE = os.getenv("PHASEFLOW_CONFIG")

DEFAULT_DEBOUNCE_MS = int(os.getenv("PHASEFLOW_DEBOUNCE_MS", "100"))
DEFAULT_BATCH_SIZE = int(os.getenv("PHASEFLOW_BATCH_SIZE", "10"))
DEFAULT_MAX_RETRIES = int(os.getenv("PHASEFLOW_MAX_RETRIES", "3"))
DEFAULT_DEDUP_WINDOW_SECONDS = float(os.getenv("PHASEFLOW_DEDUP_WINDOW_SECONDS", "1.0"))


class SyncDirection(str, Enum):
    """Which side's events the coordinator forwards."""
    BIDIRECTIONAL = "bidirectional"
    ENGINE_TO_CALENDAR = "engine_to_calendar"
    CALENDAR_TO_ENGINE = "calendar_to_engine"


class ConflictStrategy(str, Enum):
    ENGINE_WINS = "engine_wins"
    CALENDAR_WINS = "calendar_wins"
    LATEST_WINS = "latest_wins"
    MERGE = "merge"


class CoordinatorConfig(BaseModel):
    """Event coordinator settings."""
    enabled: bool = True
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    debounce_delay_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    conflict_resolution: ConflictStrategy = ConflictStrategy.LATEST_WINS
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    dedup_window_seconds: float = Field(default=DEFAULT_DEDUP_WINDOW_SECONDS, gt=0)

    @model_validator(mode="after")
    def check_debounce_inside_window(self) -> "CoordinatorConfig":
        """A queued event must still be tracked when its batch flushes."""
        if self.debounce_delay_ms / 1000.0 >= self.dedup_window_seconds:
            raise ValueError("debounce_delay_ms must be shorter than dedup_window_seconds")
        return self


class EngineSettings(BaseModel):
    """Top-level settings file model."""
    state_dir: str = str(STATE_DIR)
    rules_file: Optional[str] = RULES_FILE
    notification_log_dir: str = str(NOTIFICATION_LOG_DIR)
    webhook_url: Optional[str] = os.getenv("PHASEFLOW_WEBHOOK_URL")
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """
    Load settings from a YAML file.

    Missing file or missing keys fall back to environment defaults.
    """
    path = path or CONFIG_FILE
    if not path:
        return EngineSettings()

    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Settings file not found: {config_path}, using defaults")
        return EngineSettings()

    data: Dict[str, Any] = yaml.safe_load(config_path.read_text()) or {}
    settings = EngineSettings(**data)
    logger.info(f"Loaded settings from {config_path}")
    return settings
