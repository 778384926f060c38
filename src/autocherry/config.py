from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class GitHubAppConfig:
    app_id: int
    private_key_pem: bytes
    webhook_secret: bytes
    api_url: str = "https://api.github.com"

    def __repr__(self) -> str:
        return f"GitHubAppConfig(app_id={self.app_id}, api_url={self.api_url!r})"


@dataclass(frozen=True)
class GitConfig:
    user_name: str = "stabilisation-bot"
    user_email: str = "stabilisation-bot@users.noreply.github.com"
    work_dir: Path | None = None
    fetch_depth: int = 200
    host: str = "github.com"


@dataclass(frozen=True)
class RuntimeConfig:
    cherry_timeout_seconds: int = 600
    label_timeout_seconds: int = 90
    label_retention_keep: int = 5
    worker_count: int = 4
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    log_dir: Path | None = None


@dataclass(frozen=True)
class AppConfig:
    github_app: GitHubAppConfig
    git: GitConfig
    runtime: RuntimeConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    app_data = _require_table(data, "github_app")
    git_data = _optional_table(data, "git") or {}
    runtime_data = _optional_table(data, "runtime") or {}

    github_app = GitHubAppConfig(
        app_id=_require_int(app_data, "app_id"),
        private_key_pem=_read_secret_file(_require_path(app_data, "private_key_path", path)),
        webhook_secret=_read_secret_file(
            _require_path(app_data, "webhook_secret_path", path)
        ).strip(),
        api_url=_str_with_default(app_data, "api_url", "https://api.github.com").rstrip("/"),
    )
    if github_app.app_id < 1:
        raise ConfigError("github_app.app_id must be >= 1")
    if not github_app.webhook_secret:
        raise ConfigError("github_app.webhook_secret_path must point to a non-empty file")

    git = GitConfig(
        user_name=_str_with_default(git_data, "user_name", "stabilisation-bot"),
        user_email=_str_with_default(
            git_data, "user_email", "stabilisation-bot@users.noreply.github.com"
        ),
        work_dir=_optional_path(git_data, "work_dir"),
        fetch_depth=_int_with_default(git_data, "fetch_depth", 200),
        host=_str_with_default(git_data, "host", "github.com"),
    )
    if git.fetch_depth < 1:
        raise ConfigError("git.fetch_depth must be >= 1")

    runtime = RuntimeConfig(
        cherry_timeout_seconds=_int_with_default(runtime_data, "cherry_timeout_seconds", 600),
        label_timeout_seconds=_int_with_default(runtime_data, "label_timeout_seconds", 90),
        label_retention_keep=_int_with_default(runtime_data, "label_retention_keep", 5),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        listen_host=_str_with_default(runtime_data, "listen_host", "0.0.0.0"),
        listen_port=_int_with_default(runtime_data, "listen_port", 8080),
        log_dir=_optional_path(runtime_data, "log_dir"),
    )
    if runtime.cherry_timeout_seconds < 1:
        raise ConfigError("runtime.cherry_timeout_seconds must be >= 1")
    if runtime.label_timeout_seconds < 1:
        raise ConfigError("runtime.label_timeout_seconds must be >= 1")
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if not 0 < runtime.listen_port < 65536:
        raise ConfigError("runtime.listen_port must be between 1 and 65535")

    return AppConfig(github_app=github_app, git=git, runtime=runtime)


def _read_secret_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Unable to read secret file {path}: {exc.strerror}") from exc


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _require_path(data: dict[str, object], key: str, config_path: Path) -> Path:
    path = Path(_require_str(data, key)).expanduser()
    if not path.is_absolute():
        path = config_path.parent / path
    return path


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
