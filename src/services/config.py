"""
Loads and handles config from config.yml
Paths may be overridden from the environment (.env is loaded first)
"""
import os
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from core.errors import ConfigError


class FeedConfig(BaseModel):
    """Configuration for a single subscribed feed."""
    link: str
    name: Optional[str] = None
    desc: Optional[str] = None


class GroupConfig(BaseModel):
    """A named group of feeds."""
    name: str
    desc: str = ""
    feeds: List[FeedConfig] = []


class Config(BaseModel):
    # Storage
    DATABASE_PATH: str = "data/termfeed.db"

    # Logging
    LOG_PATH: Optional[str] = "data/termfeed.log"
    LOG_LEVEL: str = "INFO"

    # Scheduling
    REFRESH_INTERVAL_SECONDS: float = Field(900.0, gt=0)
    MAX_CONCURRENT_FETCHES: int = Field(4, ge=1)

    # Fetching
    FETCH_TIMEOUT_SECONDS: float = Field(20.0, gt=0)
    FETCH_MAX_ATTEMPTS: int = Field(3, ge=1)
    RETRY_BASE_DELAY_SECONDS: float = Field(2.0, ge=0)
    RETRY_MAX_DELAY_SECONDS: float = Field(60.0, ge=0)
    USER_AGENT: str = "termfeed/0.1"

    # Items
    EXTRACT_ON_INGEST: bool = False
    REFRESH_EXISTING_ITEMS: bool = False

    # Interface
    MARK_READ_ON_OPEN: bool = True
    CONFIRM_QUIT: bool = True

    groups: List[GroupConfig] = []


def _bool(value: str | bool) -> bool:
    """Convert string or bool to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _get_config_path(explicit: Optional[str] = None) -> str:
    """Get the path to config.yml, handling different working directories."""
    if explicit:
        if not os.path.exists(explicit):
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    from_env = os.getenv("TERMFEED_CONFIG")
    if from_env:
        if not os.path.exists(from_env):
            raise ConfigError(f"Config file not found: {from_env}")
        return from_env

    # Try relative path first
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    # Try from project root
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    raise ConfigError("Cannot find resources/config.yml")


def _parse_groups(data: List[Dict[str, Any]]) -> List[GroupConfig]:
    """Parse feed groups from YAML data."""
    groups = []
    for group in data or []:
        feeds = [
            FeedConfig(link=f.get("link", ""), name=f.get("name"), desc=f.get("desc"))
            for f in group.get("feeds", []) or []
        ]
        groups.append(GroupConfig(
            name=group.get("name", ""),
            desc=group.get("desc", "") or "",
            feeds=feeds,
        ))
    return groups


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a Config from already-loaded YAML data plus environment overrides."""
    data = data or {}
    overrides: Dict[str, Any] = {}
    for key in ("DATABASE_PATH", "LOG_PATH"):
        env_value = os.getenv(f"TERMFEED_{key}")
        if env_value:
            overrides[key] = env_value

    try:
        values = {k: v for k, v in data.items() if k != "groups"}
        for key in ("EXTRACT_ON_INGEST", "REFRESH_EXISTING_ITEMS", "MARK_READ_ON_OPEN", "CONFIRM_QUIT"):
            if key in values:
                values[key] = _bool(values[key])
        values.update(overrides)
        return Config(groups=_parse_groups(data.get("groups", [])), **values)
    except (ValidationError, AttributeError, TypeError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml and path overrides from .env."""
    load_dotenv()

    config_path = _get_config_path(path)

    with open(config_path, 'r') as file:
        try:
            data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    return parse_config(data or {})
