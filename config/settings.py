"""
Configuration loader for the answerphone service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import DataSource


class ConfigError(Exception):
    """Raised when a configuration or data file cannot be used."""


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    heartbeat_seconds: float = 30.0
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class AdminConfig:
    token: str = ""


@dataclass
class LLMConfig:
    provider: str = "ollama"             # "ollama" | "openai" | "anthropic"
    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5:3b"
    max_tokens: int = 512
    temperature: float = 0.7
    timeout_seconds: float = 300.0       # small boards take minutes per answer
    api_key: str = ""
    connect_retries: int = 3


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./answerphone.db"   # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                 # "sql" | "memory"


@dataclass
class JobsConfig:
    history_window: int = 10


@dataclass
class Settings:
    app_name: str = "answerphone"
    debug: bool = False
    data_dir: str = "./data"
    server: ServerConfig = field(default_factory=ServerConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    sources: list[DataSource] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(section).__name__}")
    return section


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ANSWERPHONE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.data_dir = raw.get("data_dir", settings.data_dir)

        if "server" in raw:
            srv = _section(raw, "server")
            settings.server = ServerConfig(
                host=srv.get("host", "0.0.0.0"),
                port=int(srv.get("port", 3000)),
                heartbeat_seconds=float(srv.get("heartbeat_seconds", 30.0)),
                cors_origins=srv.get("cors_origins", ["*"]),
            )

        if "admin" in raw:
            settings.admin = AdminConfig(token=str(_section(raw, "admin").get("token", "")))

        if "llm" in raw:
            llm = _section(raw, "llm")
            settings.llm = LLMConfig(
                provider=llm.get("provider", "ollama"),
                base_url=llm.get("base_url", settings.llm.base_url),
                model=llm.get("model", settings.llm.model),
                max_tokens=int(llm.get("max_tokens", 512)),
                temperature=float(llm.get("temperature", 0.7)),
                timeout_seconds=float(llm.get("timeout_seconds", 300.0)),
                api_key=llm.get("api_key", ""),
                connect_retries=int(llm.get("connect_retries", 3)),
            )

        if "database" in raw:
            db = _section(raw, "database")
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "jobs" in raw:
            jobs = _section(raw, "jobs")
            settings.jobs = JobsConfig(
                history_window=int(jobs.get("history_window", 10)),
            )

        settings.sources = [DataSource(**s) for s in raw.get("sources", [])]

    settings.data_dir = os.environ.get("ANSWERPHONE_DATA_DIR", settings.data_dir)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (for testing)."""
    global _settings
    _settings = None
