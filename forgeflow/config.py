"""Configuration management for ForgeFlow."""

import os
import tempfile
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "FORGEFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class OverlapPolicy(str, Enum):
    """What to do with a timer trigger that fires during an active run."""
    DROP = "drop"
    QUEUE = "queue"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="ForgeFlow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(default="sqlite:///./forgeflow.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Log message format")
    log_structured: bool = Field(default=False, description="Emit JSON log records")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Code hosting
    hosting_api_url: str = Field(default="https://api.github.com", description="Code-hosting REST API base URL")
    hosting_token: Optional[str] = Field(default=None, description="Bearer token for the hosting API")
    clone_base_url: str = Field(default="https://github.com", description="Base URL clone URLs are built from")
    http_timeout: float = Field(default=30.0, description="Timeout for hosting API and download requests")
    max_release_uploads: int = Field(default=50, description="Maximum artifacts uploaded per release")

    # Build execution
    work_dir: str = Field(default_factory=tempfile.gettempdir, description="Root for temporary clones")
    container_name: str = Field(default="forgeflow-builder", description="Build container name")
    container_workspace: str = Field(default="/workspace", description="Workspace path inside the container")
    all_platforms: List[str] = Field(
        default_factory=lambda: ["linux", "windows", "macos"],
        description="Targets built by an 'all' build step"
    )
    command_timeout: Optional[float] = Field(default=None, description="Timeout for external commands in seconds")
    auto_install_missing_tools: bool = Field(
        default=False,
        description="Install a missing command through the system package manager without asking"
    )

    # Triggers
    trigger_poll_seconds: float = Field(default=60.0, description="Polling period for clock-based triggers")
    trigger_overlap_policy: OverlapPolicy = Field(default=OverlapPolicy.DROP, description="Trigger overlap policy")

    # Health check settings
    health_check_timeout: float = Field(default=5.0, description="Health check timeout in seconds")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_release_uploads')
    @classmethod
    def validate_max_uploads(cls, v):
        if v < 1:
            raise ValueError("max_release_uploads must be at least 1")
        return v

    @field_validator('trigger_poll_seconds', 'http_timeout')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('all_platforms')
    @classmethod
    def validate_platforms(cls, v):
        platforms = [p.strip().lower() for p in v if p and p.strip()]
        unknown = [p for p in platforms if p not in ("linux", "windows", "macos")]
        if unknown:
            raise ValueError(f"Unknown build platforms: {unknown}")
        if not platforms:
            raise ValueError("At least one build platform is required")
        return platforms

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from FORGEFLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',')] if value else default
            return type_func(value)

        values = {
            "app_name": get_env("APP_NAME", "ForgeFlow"),
            "app_version": get_env("APP_VERSION", "1.0.0"),
            "debug": get_env("DEBUG", False, bool),
            "host": get_env("HOST", "127.0.0.1"),
            "port": get_env("PORT", 8000, int),
            "reload": get_env("RELOAD", False, bool),
            "database_url": get_env("DATABASE_URL", "sqlite:///./forgeflow.db"),
            "database_echo": get_env("DATABASE_ECHO", False, bool),
            "log_level": LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            "log_format": get_env("LOG_FORMAT", None),
            "log_structured": get_env("LOG_STRUCTURED", False, bool),
            "log_file": get_env("LOG_FILE", None),
            "log_max_size": get_env("LOG_MAX_SIZE", 10485760, int),
            "log_backup_count": get_env("LOG_BACKUP_COUNT", 5, int),
            "hosting_api_url": get_env("HOSTING_API_URL", "https://api.github.com"),
            "hosting_token": get_env("HOSTING_TOKEN", None),
            "clone_base_url": get_env("CLONE_BASE_URL", "https://github.com"),
            "http_timeout": get_env("HTTP_TIMEOUT", 30.0, float),
            "max_release_uploads": get_env("MAX_RELEASE_UPLOADS", 50, int),
            "container_name": get_env("CONTAINER_NAME", "forgeflow-builder"),
            "container_workspace": get_env("CONTAINER_WORKSPACE", "/workspace"),
            "all_platforms": get_env("ALL_PLATFORMS", ["linux", "windows", "macos"], list),
            "command_timeout": get_env("COMMAND_TIMEOUT", None, float),
            "auto_install_missing_tools": get_env("AUTO_INSTALL_MISSING_TOOLS", False, bool),
            "trigger_poll_seconds": get_env("TRIGGER_POLL_SECONDS", 60.0, float),
            "trigger_overlap_policy": OverlapPolicy(get_env("TRIGGER_OVERLAP_POLICY", "drop").lower()),
            "health_check_timeout": get_env("HEALTH_CHECK_TIMEOUT", 5.0, float),
        }
        work_dir = get_env("WORK_DIR", None)
        if work_dir:
            values["work_dir"] = work_dir
        return cls(**values)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if any) and the environment."""
    global _config

    from dotenv import load_dotenv
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        hosting_token="test-token",
        trigger_poll_seconds=60.0,
        http_timeout=5.0,
    )
