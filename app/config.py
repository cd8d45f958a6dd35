"""
Configuration management for Minefield.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

load_dotenv()

# Project root directory (parent of 'app' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = True
    name: str = "Minefield"


class SecurityConfig(BaseModel):
    secret_key: str = "CHANGE_THIS_IN_PRODUCTION_PLEASE"
    session_days: int = 30


class EconomyConfig(BaseModel):
    starting_credits: float = 500.0


class MinesConfig(BaseModel):
    """Grid, bet and payout policy for the mines game."""
    enabled: bool = True
    grid_sizes: List[int] = Field(default_factory=lambda: [16, 25, 36])
    max_hazard_ratio: float = 0.4
    house_edge: float = 0.03
    payout_cap: float = 500.0
    payout_floor: float = 1.05
    min_bet: float = 100.0
    max_bet: float = 10000.0
    history_limit: int = 20

    @model_validator(mode="after")
    def check_policy(self):
        if not 0.0 <= self.house_edge < 1.0:
            raise ValueError("house_edge must be in [0, 1)")
        if self.payout_floor < 1.0:
            raise ValueError("payout_floor must be at least 1.0")
        if self.payout_cap < self.payout_floor:
            raise ValueError("payout_cap must not be below payout_floor")
        if not 0.0 < self.max_hazard_ratio < 1.0:
            raise ValueError("max_hazard_ratio must be in (0, 1)")
        if not self.grid_sizes or any(size < 2 for size in self.grid_sizes):
            raise ValueError("grid_sizes must list sizes of at least 2 tiles")
        unplayable = [size for size in self.grid_sizes if self.max_hazards(size) < 1]
        if unplayable:
            raise ValueError(f"grid sizes {unplayable} allow no hazards at this max_hazard_ratio")
        if self.min_bet <= 0 or self.max_bet < self.min_bet:
            raise ValueError("bet bounds must satisfy 0 < min_bet <= max_bet")
        return self

    def max_hazards(self, grid_size: int) -> int:
        """Largest hazard count allowed on a grid of this size."""
        return min(int(grid_size * self.max_hazard_ratio), grid_size - 1)


class RateLimitConfig(BaseModel):
    enabled: bool = True
    game_requests: str = "30/minute"  # For reveals, starts, cash-outs
    api_requests: str = "60/minute"   # For general API calls


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/minefield.db"
    log_file: str = "data/app.log"

    def get_config_path(self) -> Path:
        return PROJECT_ROOT / self.config_file

    def get_db_path(self) -> Path:
        return PROJECT_ROOT / self.database

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    mines: MinesConfig = Field(default_factory=MinesConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    config_path = config_path or PathsConfig().get_config_path()

    data = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    if get_env("SERVER_HOST"):
        data.setdefault("server", {})["host"] = get_env("SERVER_HOST")
    if get_env("SERVER_PORT"):
        data.setdefault("server", {})["port"] = get_env_int("SERVER_PORT", 8000)
    if get_env("DEBUG"):
        data.setdefault("server", {})["debug"] = get_env_bool("DEBUG")

    if get_env("SECRET_KEY"):
        data.setdefault("security", {})["secret_key"] = get_env("SECRET_KEY")

    if get_env("DB_PATH"):
        data.setdefault("paths", {})["database"] = get_env("DB_PATH")

    if get_env("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = get_env("LOG_LEVEL")
    if get_env("LOG_TO_FILE"):
        data.setdefault("logging", {})["log_to_file"] = get_env_bool("LOG_TO_FILE")
    if get_env("LOG_FORMATTER"):
        data.setdefault("logging", {})["formatter"] = get_env("LOG_FORMATTER")

    if get_env("RATE_LIMIT_ENABLED"):
        data.setdefault("rate_limit", {})["enabled"] = get_env_bool("RATE_LIMIT_ENABLED", True)
    if get_env("RATE_LIMIT_GAME_REQUESTS"):
        data.setdefault("rate_limit", {})["game_requests"] = get_env("RATE_LIMIT_GAME_REQUESTS")
    if get_env("RATE_LIMIT_API_REQUESTS"):
        data.setdefault("rate_limit", {})["api_requests"] = get_env("RATE_LIMIT_API_REQUESTS")

    if get_env("MINES_HOUSE_EDGE"):
        data.setdefault("mines", {})["house_edge"] = get_env_float("MINES_HOUSE_EDGE", 0.03)
    if get_env("MINES_PAYOUT_CAP"):
        data.setdefault("mines", {})["payout_cap"] = get_env_float("MINES_PAYOUT_CAP", 500.0)
    if get_env("MINES_PAYOUT_FLOOR"):
        data.setdefault("mines", {})["payout_floor"] = get_env_float("MINES_PAYOUT_FLOOR", 1.05)

    return AppConfig(**data)


# Global config instance
settings = load_config()
