"""
Config file loading for vpsaudit.

Reads ~/.config/vpsaudit/config.toml and returns structured config.
Never raises; always returns a valid dict with sensible defaults.
Bad values for a single key fall back to that key's default only.
"""

from pathlib import Path

_CONFIG_PATH = Path.home() / ".config" / "vpsaudit" / "config.toml"

_DANGER_CLASSES = frozenset(("safe", "confirm_required", "lockout_protected"))
_CLOUD_POLICIES = frozenset(("all_or_nothing", "proportional"))


def default_config() -> dict:
    """Return a fresh dict of defaults (safe to mutate)."""
    return {
        "suppress": set(),
        "module_timeout": 30.0,
        "max_workers": 8,
        "lock_wait": 60.0,
        "backup_dir": Path.home() / ".local" / "share" / "vpsaudit" / "backups",
        "backup_keep": 10,
        "log_file": None,
        "danger_overrides": {},
        "cloud_agent_policy": "all_or_nothing",
        "cloud_provider_threshold": 1.0,
    }


def load_config(path: Path | None = None) -> dict:
    """
    Load and return vpsaudit config from TOML file.

    Missing file, parse errors, or bad shapes return defaults and never raise.
    """
    config_path = path or _CONFIG_PATH
    config = default_config()

    if not config_path.is_file():
        return config

    try:
        raw = config_path.read_bytes()
    except OSError:
        return config

    try:
        import tomllib
    except ModuleNotFoundError:
        try:
            import tomli as tomllib  # type: ignore[no-redef]
        except ModuleNotFoundError:
            return config

    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except Exception:
        return config

    suppress = data.get("suppress")
    if isinstance(suppress, list):
        config["suppress"] = {str(item) for item in suppress}

    for key in ("module_timeout", "lock_wait", "cloud_provider_threshold"):
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            config[key] = float(value)

    for key in ("max_workers", "backup_keep"):
        value = data.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            config[key] = value

    for key in ("backup_dir", "log_file"):
        value = data.get(key)
        if isinstance(value, str) and value:
            config[key] = Path(value).expanduser()

    overrides = data.get("danger_overrides")
    if isinstance(overrides, dict):
        config["danger_overrides"] = {
            str(k): str(v) for k, v in overrides.items() if v in _DANGER_CLASSES
        }

    policy = data.get("cloud_agent_policy")
    if policy in _CLOUD_POLICIES:
        config["cloud_agent_policy"] = policy

    return config
