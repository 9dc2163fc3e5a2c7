"""Typed settings for the listarchive IMAP runner.

Settings are plain Pydantic models so the CLI, the runner and the tests can
rely on validated values. Values come from an optional JSON file and are then
overridden by environment variables, which is how the runner is normally
configured in production.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from listarchive.errors import InvalidConfigError, MissingConfigError


DEFAULT_CONFIG_PATH = Path.home() / ".listarchive" / "config.json"
DEFAULT_DATA_DIR = Path.home() / ".listarchive"
DEFAULT_MAILBOX = "INBOX"


class ImapSettings(BaseModel):
    """Connection and runner settings for one IMAP mailbox label."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    ssl: bool = Field(default=True, description="Use implicit TLS")
    username: Optional[str] = Field(default=None, description="Login name")
    password: Optional[SecretStr] = Field(default=None, description="Login password or app password")
    mailbox_label: str = Field(..., description="Dedicated label/folder to ingest (never INBOX)")
    batch_size: int = Field(default=200, ge=1, le=2000, description="Max UIDs listed per request")
    idle_timeout_seconds: int = Field(
        default=1500,
        ge=1,
        le=1740,
        description="IDLE wait per cycle, kept below the server's ~29 minute IDLE limit",
    )
    max_cycles: Optional[int] = Field(default=None, ge=0, description="Stop after N idle cycles")
    connection_timeout: int = Field(default=30, ge=1, le=600, description="Socket timeout in seconds")
    trust_dates: bool = Field(default=True, description="Store Date headers without sanitation")

    @field_validator("mailbox_label")
    @classmethod
    def _validate_label(cls, value: str) -> str:
        label = (value or "").strip()
        if not label:
            raise ValueError("mailbox_label is required")
        if label.upper() == DEFAULT_MAILBOX:
            raise ValueError("mailbox_label must be a dedicated label, not INBOX")
        return label


class ArchiveSettings(BaseModel):
    """Where the archive and runner locks live."""

    database_path: Path = Field(default=DEFAULT_DATA_DIR / "archive.db")
    lock_dir: Path = Field(default=DEFAULT_DATA_DIR / "locks")
    own_domain: Optional[str] = Field(
        default=None,
        description="Recipients at this domain (the list itself) are not recorded as mentions",
    )

    @field_validator("database_path", "lock_dir")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return Path(value).expanduser()


class Settings(BaseModel):
    """Root configuration state."""

    imap: Optional[ImapSettings] = None
    archive: ArchiveSettings = Field(default_factory=ArchiveSettings)

    def require_imap(self) -> ImapSettings:
        if self.imap is None:
            raise MissingConfigError(
                "IMAP_MAILBOX_LABEL is required and must not be INBOX; "
                "configure a dedicated label for list mail",
                details={"setting": "imap.mailbox_label"},
            )
        return self.imap


def load_settings(
    path: Optional[Path] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
    require_imap: bool = True,
) -> Settings:
    """Load settings from an optional JSON file plus environment overrides.

    Args:
        path: Optional JSON config file; missing files are ignored
        overrides: Nested mapping applied after the file and before env
        environ: Environment mapping (defaults to ``os.environ``)
        require_imap: Fail when no mailbox label is configured; when False
            a missing label leaves ``Settings.imap`` unset

    Raises:
        MissingConfigError: If the mailbox label is required but not configured
        InvalidConfigError: If any value fails validation
    """
    payload: Dict[str, Any] = {}
    if path is not None and path.exists():
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidConfigError(f"Config file {path} is not valid JSON: {exc}") from exc

    for section, values in (overrides or {}).items():
        payload.setdefault(section, {}).update(values)

    payload = _apply_env_overrides(payload, os.environ if environ is None else environ)

    label = payload.get("imap", {}).get("mailbox_label")
    if (label is None or not str(label).strip()) and not require_imap:
        payload.pop("imap", None)
    elif label is None or not str(label).strip():
        raise MissingConfigError(
            "IMAP_MAILBOX_LABEL is required and must not be INBOX; "
            "configure a dedicated label for list mail",
            details={"setting": "imap.mailbox_label"},
        )

    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets."""

    payload = settings.model_dump(mode="json")
    if payload.get("imap", {}).get("password"):
        payload["imap"]["password"] = "***"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _apply_env_overrides(data: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    imap = data.setdefault("imap", {})
    _set_env_override(imap, "host", "IMAP_HOST", environ)
    _set_env_override(imap, "port", "IMAP_PORT", environ, cast_int=True)
    _set_env_override(imap, "ssl", "IMAP_SSL", environ, cast_bool=True)
    _set_env_override(imap, "username", "IMAP_USERNAME", environ)
    _set_env_override(imap, "password", "IMAP_PASSWORD", environ)
    _set_env_override(imap, "mailbox_label", "IMAP_MAILBOX_LABEL", environ)
    _set_env_override(imap, "batch_size", "IMAP_BATCH_SIZE", environ, cast_int=True)
    _set_env_override(imap, "idle_timeout_seconds", "IMAP_IDLE_TIMEOUT", environ, cast_int=True)
    _set_env_override(imap, "max_cycles", "IMAP_MAX_CYCLES", environ, cast_int=True)

    archive = data.setdefault("archive", {})
    _set_env_override(archive, "database_path", "LISTARCHIVE_DB_PATH", environ)
    _set_env_override(archive, "lock_dir", "LISTARCHIVE_LOCK_DIR", environ)
    _set_env_override(archive, "own_domain", "LISTARCHIVE_OWN_DOMAIN", environ)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    environ: Dict[str, str],
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = environ.get(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes", "on"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise InvalidConfigError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw
