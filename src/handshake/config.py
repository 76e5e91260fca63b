"""Configuration management with XDG paths, atomic writes, and profile resolution.

This module handles everything handshake persists on the user's machine:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.handshake/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_data_dir` and :func:`get_profiles_dir`.
* **Global config** -- A single :class:`~handshake.models.GlobalConfig`
  JSON file storing defaults (request timeout, TLS verification, output
  format, log level, default profile).
* **Credential profiles** -- One JSON file per
  :class:`~handshake.models.CredentialProfile`, i.e. a protocol id plus its
  credential mapping. Managed via :func:`load_profile`, :func:`save_profile`,
  :func:`delete_profile` and :func:`merge_profile_credentials`.
* **Precedence resolution** -- :func:`resolve_profile_name` picks the active
  profile from the CLI flag, ``HANDSHAKE_PROFILE`` and the global default.
* **Credential resolution** -- :func:`resolve_credentials` expands
  ``env:VAR`` and ``file:/path`` references inside a credential mapping so
  that secrets need not be stored in the profile itself.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) so a crash never leaves a half-written profile.
"""

from __future__ import annotations

import json
import os
import platform
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from handshake.exceptions import ConfigError
from handshake.models import CredentialProfile, GlobalConfig

_APP_NAME = "handshake"
_CONFIG_FILENAME = "config.json"
_PROFILE_ENV_VAR = "HANDSHAKE_PROFILE"
_PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/handshake/`` (default
    ``~/.config/handshake/``). On macOS/Windows: ``~/.handshake/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/handshake/`` (default
    ``~/.local/share/handshake/``). On macOS/Windows: ``~/.handshake/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_profiles_dir() -> Path:
    """Return ``<config_dir>/profiles/``, creating it if necessary."""
    path = get_config_dir() / "profiles"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. Profiles hold
    secrets, so the file is created with mode 0600.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        os.chmod(tmp_path, 0o600)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


# --- Global config ---


def _global_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration.

    Returns:
        The :class:`~handshake.models.GlobalConfig`, or a default instance
        when the file does not exist.

    Raises:
        ConfigError: If the file exists but is not valid JSON or fails
            validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        return GlobalConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except ValueError as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    data = config.model_dump(mode="json")
    _atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Profiles ---


def _profile_path(name: str) -> Path:
    if not _PROFILE_NAME_RE.match(name):
        raise ConfigError(
            f"Invalid profile name '{name}': use letters, digits, '.', '_' or '-'"
        )
    return get_profiles_dir() / f"{name}.json"


def list_profiles() -> list[str]:
    """Return all profile names, sorted alphabetically."""
    return sorted(p.stem for p in get_profiles_dir().glob("*.json") if p.is_file())


def profile_exists(name: str) -> bool:
    return _profile_path(name).is_file()


def load_profile(name: str) -> CredentialProfile:
    """Load and validate a credential profile.

    Raises:
        ConfigError: If the profile does not exist, is not valid JSON, or
            fails validation.
    """
    path = _profile_path(name)
    if not path.is_file():
        raise ConfigError(f"Profile '{name}' not found at {path}")
    try:
        return CredentialProfile.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except ValueError as exc:
        raise ConfigError(f"Invalid profile '{name}' at {path}: {exc}") from exc


def save_profile(profile: CredentialProfile) -> None:
    """Persist *profile* atomically; the file name is ``<profile.name>.json``."""
    data = profile.model_dump(mode="json")
    _atomic_write(_profile_path(profile.name), json.dumps(data, indent=2) + "\n")


def delete_profile(name: str) -> None:
    """Delete a profile.

    Raises:
        ConfigError: If the profile does not exist.
    """
    path = _profile_path(name)
    if not path.is_file():
        raise ConfigError(f"Profile '{name}' not found at {path}")
    path.unlink()


def merge_profile_credentials(name: str, delta: dict[str, Any]) -> CredentialProfile:
    """Merge a credential delta (e.g. rotated tokens) into a stored profile.

    Keys whose stored value is an ``env:``/``file:`` reference are left
    alone, so a refresh never overwrites where a secret comes from.

    Returns:
        The updated profile.
    """
    profile = load_profile(name)
    for key, value in delta.items():
        current = profile.credentials.get(key)
        if isinstance(current, str) and _is_reference(current):
            continue
        profile.credentials[key] = value
    save_profile(profile)
    return profile


# --- Precedence resolution ---


def resolve_profile_name(cli_profile: Optional[str] = None) -> Optional[str]:
    """Pick the active profile name.

    Precedence (high to low):
        1. CLI flag (``--profile``)
        2. ``HANDSHAKE_PROFILE`` environment variable
        3. ``default_profile`` in the global config
    """
    if cli_profile:
        return cli_profile
    env_profile = os.environ.get(_PROFILE_ENV_VAR)
    if env_profile:
        return env_profile
    return load_global_config().default_profile


# --- Credential source resolution ---


def _is_reference(value: str) -> bool:
    return value.startswith("env:") or value.startswith("file:")


def resolve_credential(source: str) -> str:
    """Resolve one credential value.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads the file, stripped of whitespace
        - anything else is returned unchanged

    Raises:
        ConfigError: If the variable is unset or the file cannot be read.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    return source


def resolve_credentials(credentials: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *credentials* with every string value passed through :func:`resolve_credential`."""
    return {
        key: resolve_credential(value) if isinstance(value, str) else value
        for key, value in credentials.items()
    }
