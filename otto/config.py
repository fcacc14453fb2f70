"""Configuration loading from YAML and environment.

Secrets (ADO PAT, GitHub token, LLM token) are taken from environment
variables or from files (Docker secrets). Never put real tokens in config
files committed to the repo.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret(env_key: str, file_env_key: str) -> str | None:
    """Read secret from env var or from file path in env (e.g. Docker
    secrets)."""
    value = _current_env.get(env_key)
    if value:
        return value.strip()
    file_path = _current_env.get(file_env_key)
    if file_path:
        return Path(file_path).read_text().strip()
    return None


# Injected by load_config so properties can read env/file
_current_env: dict[str, str] = {}


def _data_home() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "otto"
    return Path.home() / ".local" / "share" / "otto"


def default_config_path() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "otto" / "config.yaml"


class BotConfig(BaseSettings):
    """Git identity used for fix commits."""

    model_config = SettingsConfigDict(env_prefix="BOT_", extra="ignore")

    name: str = Field(default="Otto", description="Git user.name for commits")
    email: str = Field(default="otto@localhost", description="Git user.email for commits")


class AdoProviderConfig(BaseSettings):
    """Azure DevOps backend settings."""

    model_config = SettingsConfigDict(env_prefix="OTTO_ADO_", extra="ignore")

    enabled: bool = Field(default=False, description="Register the ADO backend")
    organization: str = Field(default="", description="Default organization for bare PR ids")
    project: str = Field(default="", description="Default project for bare PR ids")
    repository: str = Field(default="", description="Default repository for bare PR ids")
    pat: str | None = Field(default=None, description="PAT fallback; prefer env OTTO_ADO_PAT")
    bot_identities: list[str] = Field(
        default_factory=lambda: ["MerlinBot"],
        description="Display names treated as review bots by the addressBot workflow",
    )
    auto_complete: bool = Field(default=False, description="Enable auto-complete workflow on add")
    work_item_area_path: str = Field(default="", description="Area path for follow-up work items")


class GitHubProviderConfig(BaseSettings):
    """GitHub backend settings."""

    model_config = SettingsConfigDict(env_prefix="GITHUB_", extra="ignore")

    enabled: bool = Field(default=False, description="Register the GitHub backend")
    token: str | None = Field(default=None, description="PAT or app token; use env or secret file")
    api_url: str = Field(default="https://api.github.com", description="API base URL")
    owner: str = Field(default="", description="Default owner for bare PR numbers")
    repository: str = Field(default="", description="Default repository for bare PR numbers")


class ProvidersConfig(BaseSettings):
    """Provider backends, registered in declaration order (ado, github)."""

    model_config = SettingsConfigDict(extra="ignore")

    ado: AdoProviderConfig = Field(default_factory=AdoProviderConfig)
    github: GitHubProviderConfig = Field(default_factory=GitHubProviderConfig)


class PRConfig(BaseSettings):
    """PR tracking settings."""

    model_config = SettingsConfigDict(env_prefix="OTTO_PR_", extra="ignore")

    max_fix_attempts: int = Field(default=5, ge=1, le=50, description="Fix attempts before giving up")
    store_dir: str | None = Field(default=None, description="PR document dir (default: $XDG_DATA_HOME/otto/prs)")
    reap_after_hours: float = Field(
        default=24, ge=0, description="Delete merged/abandoned documents this long after the last check; 0 keeps them"
    )
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)

    @property
    def store_path(self) -> Path:
        if self.store_dir:
            return Path(self.store_dir).expanduser()
        return _data_home() / "prs"


class ServerConfig(BaseSettings):
    """Daemon settings."""

    model_config = SettingsConfigDict(env_prefix="OTTO_SERVER_", extra="ignore")

    poll_interval_seconds: int = Field(default=120, ge=5, description="Poll interval in seconds")
    state_dir: str | None = Field(default=None, description="PID/log dir (default: $XDG_DATA_HOME/otto)")
    shutdown_grace_seconds: int = Field(default=30, ge=1, description="Wait for the loop before hard exit")

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return _data_home()


class LLMConfig(BaseSettings):
    """Headless coding-agent CLI used as the LLM capability."""

    model_config = SettingsConfigDict(env_prefix="OTTO_LLM_", extra="ignore")

    command: str = Field(default="agent", description="CLI command name")
    model: str | None = Field(default=None, description="--model: model to use")
    timeout: int = Field(default=900, ge=1, description="Timeout per prompt in seconds")
    token: str | None = Field(default=None, description="Agent token; prefer env or secret file")


class LoggingConfig(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=0, description="Rotate the daemon log at this size (0: never)")
    file_backups: int = Field(default=3, ge=0, description="Rotated daemon logs to keep")


class AppConfig(BaseSettings):
    """Root application config from YAML + env."""

    model_config = SettingsConfigDict(extra="ignore")

    bot: BotConfig = Field(default_factory=BotConfig)
    pr: PRConfig = Field(default_factory=PRConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    repos: dict[str, str] = Field(default_factory=dict, description="Repository name -> local checkout path")

    @property
    def ado_pat_resolved(self) -> str | None:
        """Resolve ADO PAT from config, env or Docker secret file."""
        p = self.pr.providers.ado.pat
        if p and not p.startswith("${"):
            return p
        return _read_secret("OTTO_ADO_PAT", "OTTO_ADO_PAT_FILE")

    @property
    def github_token_resolved(self) -> str | None:
        """Resolve GitHub token from env or Docker secret file."""
        t = self.pr.providers.github.token
        if t and not t.startswith("${"):
            return t
        return _read_secret("GITHUB_TOKEN", "GITHUB_TOKEN_FILE")

    @property
    def llm_token_resolved(self) -> str | None:
        """Resolve LLM agent token from env or Docker secret file."""
        t = self.llm.token
        if t and not t.startswith("${"):
            return t
        return _read_secret("OTTO_LLM_TOKEN", "OTTO_LLM_TOKEN_FILE")


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and $VAR in strings with os.environ."""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            key = value[2:-1].strip()
            return _current_env.get(key, value)
        if value.startswith("$") and not value.startswith("${"):
            key = value[1:].strip()
            return _current_env.get(key, value)
        return value
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load config from YAML file and environment.

    Secrets: OTTO_ADO_PAT(_FILE), GITHUB_TOKEN(_FILE), OTTO_LLM_TOKEN(_FILE).
    """
    global _current_env

    _current_env = dict(os.environ)

    path = config_path or default_config_path()
    if not path.is_file():
        return AppConfig()

    raw = yaml.safe_load(path.read_text()) or {}
    raw = _substitute_env(raw)

    pr_raw = dict(raw.get("pr") or {})
    providers_raw = pr_raw.pop("providers", None) or {}
    providers = ProvidersConfig(
        ado=AdoProviderConfig(**(providers_raw.get("ado") or {})),
        github=GitHubProviderConfig(**(providers_raw.get("github") or {})),
    )

    return AppConfig(
        bot=BotConfig(**(raw.get("bot") or {})),
        pr=PRConfig(**pr_raw, providers=providers),
        server=ServerConfig(**(raw.get("server") or {})),
        llm=LLMConfig(**(raw.get("llm") or {})),
        logging=LoggingConfig(**(raw.get("logging") or {})),
        repos={str(k): str(v) for k, v in (raw.get("repos") or {}).items()},
    )
