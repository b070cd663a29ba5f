"""
Runtime configuration for the Harbormaster controller.
Values come from the environment, with a .env file loaded first.
"""

import os
from pathlib import Path
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{value}'")


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    redis_url: str = "redis://localhost:6379/0"
    updates_channel: str = "updates"
    docker_port: int = 2375
    docker_timeout: int = 60
    container_port: int = 3000
    port_range_start: int = 8000
    port_range_end: int = 8999  # exclusive
    health_path: str = "/ping"
    health_retries: int = 10
    health_interval_seconds: float = 2.0
    health_timeout_seconds: float = 2.0
    max_parallel: int = 0  # 0 = one task per planned instance
    default_count: int = 2
    max_count: int = 32
    history_limit: int = 100
    log_dir: str = "logs"
    log_file: str = "harbormaster-controller.log"

    def __post_init__(self):
        if self.port_range_end <= self.port_range_start:
            raise ValueError(
                f"port range end ({self.port_range_end}) must be > start ({self.port_range_start})"
            )
        if self.health_retries < 1:
            raise ValueError("health_retries must be >= 1")
        if self.max_parallel < 0:
            raise ValueError("max_parallel must be >= 0")
        if not 1 <= self.default_count <= self.max_count:
            raise ValueError("default_count must be between 1 and max_count")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("HARBORMASTER_HOST", cls.host),
            port=_env_int("HARBORMASTER_PORT", cls.port),
            redis_url=os.getenv("HARBORMASTER_REDIS_URL", cls.redis_url),
            updates_channel=os.getenv("HARBORMASTER_UPDATES_CHANNEL", cls.updates_channel),
            docker_port=_env_int("HARBORMASTER_DOCKER_PORT", cls.docker_port),
            docker_timeout=_env_int("HARBORMASTER_DOCKER_TIMEOUT", cls.docker_timeout),
            container_port=_env_int("HARBORMASTER_CONTAINER_PORT", cls.container_port),
            port_range_start=_env_int("HARBORMASTER_PORT_RANGE_START", cls.port_range_start),
            port_range_end=_env_int("HARBORMASTER_PORT_RANGE_END", cls.port_range_end),
            health_path=os.getenv("HARBORMASTER_HEALTH_PATH", cls.health_path),
            health_retries=_env_int("HARBORMASTER_HEALTH_RETRIES", cls.health_retries),
            health_interval_seconds=_env_float("HARBORMASTER_HEALTH_INTERVAL", cls.health_interval_seconds),
            health_timeout_seconds=_env_float("HARBORMASTER_HEALTH_TIMEOUT", cls.health_timeout_seconds),
            max_parallel=_env_int("HARBORMASTER_MAX_PARALLEL", cls.max_parallel),
            default_count=_env_int("HARBORMASTER_DEFAULT_COUNT", cls.default_count),
            max_count=_env_int("HARBORMASTER_MAX_COUNT", cls.max_count),
            history_limit=_env_int("HARBORMASTER_HISTORY_LIMIT", cls.history_limit),
            log_dir=os.getenv("HARBORMASTER_LOG_DIR", cls.log_dir),
            log_file=os.getenv("HARBORMASTER_LOG_FILE", cls.log_file),
        )

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir) / self.log_file

    @property
    def port_range(self) -> range:
        return range(self.port_range_start, self.port_range_end)
