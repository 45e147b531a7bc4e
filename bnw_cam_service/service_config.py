import copy
import json
from pathlib import Path

from backends import ConfigError, TONE_RECIPES
from metadata import CaptureRequest, Ladder

DEFAULT_CONFIG = {
    "button": {"gpio": 13, "active_low": True, "debounce_us": 10},
    "capture": {
        "backend": "rpicam",
        "binary": "",
        "timeout_ms": 400,
        "width": 0,
        "height": 0,
        "format": "jpg",
        "process_timeout_s": 30,
    },
    "transform": {"backend": "imagemagick", "recipe": "filmish", "process_timeout_s": 40},
    "encode": {
        "backend": "imagemagick",
        "format": "webp",
        "budget_bytes": 100_000,
        "qualities": [85, 80, 75, 70, 65],
        "resolutions": [960, 900, 840],
        "size_hint": False,
        "process_timeout_s": 60,
    },
    "export": {"base_dir": "./images", "extensions": [".webp", ".jpg", ".jpeg", ".png"]},
    "network": {"trigger_port": 9999, "viewer_port": 3000},
    "logging": {"level": "INFO"},
}


def _merge(base: dict, override: dict) -> dict:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _merge(base[k], v)
        else:
            base[k] = v
    return base


def load_config(path: str | Path | None = "config.json") -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None and Path(path).exists():
        try:
            with open(path) as f:
                _merge(cfg, json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON: {e}") from e
    validate_config(cfg)
    return cfg


def get_param(cfg: dict, key_path: str):
    """
    Access any nested parameter using dot notation, e.g.
    get_param(cfg, "encode.budget_bytes")
    """
    sub = cfg
    for k in key_path.split("."):
        sub = sub[k]
    return sub


def update_cfg(cfg: dict, key_path: str, value) -> bool:
    """
    Update a nested cfg key, converting value to the type already stored there.
    Returns False if the key does not exist.
    """
    keys = key_path.split(".")
    sub = cfg
    for k in keys[:-1]:
        if not isinstance(sub, dict) or k not in sub:
            return False
        sub = sub[k]
    last_key = keys[-1]
    if not isinstance(sub, dict) or last_key not in sub:
        return False

    current = sub[last_key]
    if isinstance(current, bool):
        sub[last_key] = str(value).lower() in ("1", "true", "yes")
    elif isinstance(current, list):
        items = value if isinstance(value, list) else str(value).replace(",", " ").split()
        item_type = type(current[0]) if current else str
        sub[last_key] = [item_type(v) for v in items]
    else:
        sub[last_key] = type(current)(value)
    return True


def build_ladder(cfg: dict) -> Ladder:
    try:
        return Ladder(
            resolutions=tuple(int(r) for r in cfg["encode"]["resolutions"]),
            qualities=tuple(int(q) for q in cfg["encode"]["qualities"]),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid encode ladder: {e}") from e


def build_request(cfg: dict) -> CaptureRequest:
    cap = cfg["capture"]
    return CaptureRequest(
        timeout_ms=int(cap["timeout_ms"]),
        longest_edge=int(cfg["encode"]["resolutions"][0]),
        recipe=cfg["transform"]["recipe"],
        width=int(cap["width"]),
        height=int(cap["height"]),
        output_format=cap["format"],
    )


def validate_config(cfg: dict) -> None:
    build_ladder(cfg)
    if int(cfg["encode"]["budget_bytes"]) <= 0:
        raise ConfigError("encode.budget_bytes must be positive")
    if cfg["transform"]["recipe"] not in TONE_RECIPES:
        raise ConfigError(f"unknown transform.recipe {cfg['transform']['recipe']!r}")

    match (cfg["encode"]["backend"], cfg["encode"]["format"]):
        case ("cwebp", fmt) if fmt != "webp":
            raise ConfigError("the cwebp encoder only writes webp")
        case (_, fmt) if fmt not in ("webp", "jpg"):
            raise ConfigError(f"unsupported encode.format {fmt!r}")
        case (backend, _) if backend not in ("imagemagick", "cwebp", "opencv"):
            raise ConfigError(f"unknown encode.backend {backend!r}")

    if cfg["transform"]["backend"] not in ("imagemagick", "opencv"):
        raise ConfigError(f"unknown transform.backend {cfg['transform']['backend']!r}")
    if cfg["capture"]["backend"] not in ("rpicam", "picamera2"):
        raise ConfigError(f"unknown capture.backend {cfg['capture']['backend']!r}")
    if cfg["button"].get("debounce_us", 0) < 0:
        raise ConfigError("button.debounce_us must not be negative")
