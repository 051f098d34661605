import os
import json
from pathlib import Path
from typing import Dict, Any

CONFIG_DIR = Path(os.environ.get("RELSCOPE_HOME") or (Path(os.path.expanduser("~")) / ".relscope"))
CONFIG_DIR.mkdir(parents=True, exist_ok=True)
TOPOLOGY_SETTINGS_PATH = CONFIG_DIR / "topology_settings.json"

TOPOLOGY_DEFAULTS: Dict[str, Any] = {
    "initial_depth": 3,
    "expand_depth": 3,
    "render_debounce_ms": 100,
    # either a path/command name or the name of an environment variable holding one
    "mmdc_path": "mmdc",
    "render_timeout": 30,
    "theme": "dark",
}

_INT_BOUNDS = {
    "initial_depth": (1, 10),
    "expand_depth": (1, 10),
    "render_debounce_ms": (0, 5000),
    "render_timeout": (1, 600),
}


def _coerce_int(value: Any, key: str) -> int:
    lo, hi = _INT_BOUNDS[key]
    try:
        number = int(value)
    except (TypeError, ValueError):
        return TOPOLOGY_DEFAULTS[key]
    return min(max(number, lo), hi)


def load_topology_settings(path: Path | None = None) -> Dict[str, Any]:
    """Load topology view settings from topology_settings.json merged over the defaults.

    - Integer settings are clamped to sane ranges; unparsable values fall back to defaults.
    - mmdc_path is resolved through os.environ.get(stored, stored), so the stored value may be
      an environment variable name or the literal executable path.
    """
    settings_path = Path(path) if path else TOPOLOGY_SETTINGS_PATH
    data: Dict[str, Any] = {}
    if settings_path.exists():
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
        except (OSError, json.JSONDecodeError):
            # best-effort: a broken file means defaults
            data = {}

    out = dict(TOPOLOGY_DEFAULTS)
    for key in _INT_BOUNDS:
        if key in data:
            out[key] = _coerce_int(data[key], key)

    stored_mmdc = str(data.get("mmdc_path") or TOPOLOGY_DEFAULTS["mmdc_path"])
    out["mmdc_path"] = os.environ.get(stored_mmdc, stored_mmdc)

    theme = str(data.get("theme") or TOPOLOGY_DEFAULTS["theme"])
    out["theme"] = theme if theme in ("dark", "default") else TOPOLOGY_DEFAULTS["theme"]
    return out


def save_topology_settings(settings: Dict[str, Any], path: Path | None = None) -> None:
    """Save topology settings. Unknown keys are dropped; raises on write failures."""
    settings_path = Path(path) if path else TOPOLOGY_SETTINGS_PATH
    data = {key: settings.get(key, default) for key, default in TOPOLOGY_DEFAULTS.items()}
    with open(settings_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_app_state() -> dict:
    """Load simple application state from app_state.json.

    Returns a dict; on error or missing file returns empty dict.
    Used to remember the last opened connection and window geometry.
    """
    state_path = CONFIG_DIR / "app_state.json"
    if not state_path.exists():
        return {}
    try:
        with open(state_path, "r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
    except (OSError, json.JSONDecodeError):
        pass
    return {}


def save_app_state(state: dict) -> None:
    """Save application state (dict) to app_state.json. Raises on write failures."""
    state_path = CONFIG_DIR / "app_state.json"
    with open(state_path, "w", encoding="utf-8") as f:
        json.dump(state or {}, f, indent=2)
