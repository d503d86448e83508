from __future__ import annotations

import os
import re
from enum import Enum
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class EnvironmentType(str, Enum):
    """Deployment profiles the platform can be driven in."""

    DEV = "dev"
    TEST = "test"
    UAT = "uat"
    PROD = "prod"
    LOCAL = "local"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def from_profile(cls, profile: Optional[str]) -> "EnvironmentType":
        """Map a profile name to an environment, defaulting to ``DEV``."""
        for env in cls:
            if profile and env.value == profile.lower():
                return env
        return cls.DEV


_DESCRIPTIONS = {
    EnvironmentType.DEV: "Development",
    EnvironmentType.TEST: "Testing",
    EnvironmentType.UAT: "User Acceptance Testing",
    EnvironmentType.PROD: "Production",
    EnvironmentType.LOCAL: "Local Development",
}


class ConnectionConfig(BaseModel):
    """Connection parameters for the governance platform."""

    server_url: str = "http://localhost:8080/identityiq"
    username: str = "spadmin"
    password: Optional[str] = None
    database_url: Optional[str] = None


class PollingConfig(BaseModel):
    """Poll intervals and wait budgets, in seconds."""

    work_item_interval: float = 1.0
    case_interval: float = 2.0
    settle_interval: float = 2.0
    work_item_timeout: float = 10.0
    task_interval: float = 5.0
    max_approval_levels: int = 5


class EngineConfig(BaseModel):
    """Engine backend selection."""

    backend: Literal["inmemory"] = "inmemory"
    definitions_path: Optional[str] = None


class GovflowConfig(BaseModel):
    """Top-level configuration model."""

    profile: str = "dev"
    environment_name: str = "UNKNOWN"
    admin_identity: str = "spadmin"
    rollback_transactions: bool = False
    log_level: str = "INFO"
    connection: ConnectionConfig = ConnectionConfig()
    polling: PollingConfig = PollingConfig()
    engine: EngineConfig = EngineConfig()

    @property
    def environment(self) -> EnvironmentType:
        return EnvironmentType.from_profile(self.profile)

    def is_development(self) -> bool:
        return self.environment in (EnvironmentType.DEV, EnvironmentType.LOCAL)

    def is_test(self) -> bool:
        return self.environment is EnvironmentType.TEST

    def is_production(self) -> bool:
        return self.environment is EnvironmentType.PROD

    def should_rollback_transactions(self) -> bool:
        """Whether committed work should be rolled back for test isolation.

        Production never rolls back regardless of the flag.
        """
        if self.is_production():
            return False
        return self.rollback_transactions

    def caching_enabled(self) -> bool:
        """Object caching is only allowed in non-production-like profiles."""
        return self.is_development() or self.is_test()

    def max_retry_count(self) -> int:
        if self.is_development():
            return 1
        if self.is_production():
            return 5
        return 3

    def timeout_seconds(self) -> float:
        if self.is_development():
            return 60.0
        if self.is_production():
            return 300.0
        return 120.0

    @property
    def display_name(self) -> str:
        return f"[{self.profile.upper()}] {self.environment_name}"

    def masked_server_url(self) -> str:
        return mask_url(self.connection.server_url)

    def masked_database_url(self) -> str:
        return mask_url(self.connection.database_url)


def mask_url(url: Optional[str]) -> str:
    """Hide credentials embedded in ``url``."""
    if not url:
        return "Not configured"
    return re.sub(r"://[^@/]+@", "://****@", url)


def load_config(path: Optional[str] = None) -> GovflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GOVFLOW_CONFIG env
            variable or 'govflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("GOVFLOW_CONFIG", "govflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GovflowConfig(**data)
    else:
        config = GovflowConfig()

    env_profile = os.getenv("GOVFLOW_PROFILE")
    if env_profile:
        config.profile = env_profile
    env_backend = os.getenv("GOVFLOW_ENGINE")
    if env_backend:
        config.engine.backend = env_backend
    env_db_url = os.getenv("GOVFLOW_DATABASE_URL")
    if env_db_url:
        config.connection.database_url = env_db_url
    return config
