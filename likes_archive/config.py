from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class ArchivePaths:
    data_root: Path
    database: Path
    media_dir: Path
    profile_dir: Path
    run_log: Path


def load_config(path: str | Path | None = None) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    With no path, the defaults are returned. Raises ConfigError with a readable
    validation message on failure.
    """
    if path is None:
        return AppConfig()

    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def resolve_paths(config: AppConfig, *, create: bool = True) -> ArchivePaths:
    """
    Resolve every on-disk location from the data root.

    The browser profile, database and media all live under the application-private
    data root; nothing points at a user's own browser profile.
    """
    root = Path(config.storage.data_root).expanduser()
    paths = ArchivePaths(
        data_root=root,
        database=root / config.storage.database_name,
        media_dir=root / config.storage.media_dir_name,
        profile_dir=root / config.browser.profile_dir_name,
        run_log=root / "logs" / "run.log",
    )

    if create:
        try:
            for d in (paths.data_root, paths.media_dir, paths.profile_dir, paths.run_log.parent):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Failed to create data directories under {root}: {e}") from e

    return paths


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values for the run log.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
