"""Configuration loading and validation for convoloop.

Built-in defaults are deep-merged with an optional JSON config file,
validated against the JSON Schema below, then environment variable
overlays are applied. Typed accessors build the component configs.

Usage:
    from convoloop.config import ConvoConfig, ConfigValidationError
    cfg = ConvoConfig("convoloop.json")
    vad_cfg = cfg.vad_config()

Environment variable overlays:
    CONVOLOOP_DIALOGUE__BASE_URL=http://10.0.0.5:3000
    CONVOLOOP_TURN__BARGE_IN=false
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from .app.controls import DEFAULT_DEBOUNCE_SECS
from .clients.dialogue_client import DialogueConfig
from .pipeline.capture import CaptureConfig
from .pipeline.vad import VADConfig
from .voice.turn_router import TurnMachineConfig
from .voice.turn_state import Session

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONVOLOOP_"

DEFAULT_CONFIG: Dict[str, Any] = {
    "session": {"from_id": "user", "to_id": "agent"},
    "dialogue": {
        "base_url": "http://127.0.0.1:3000",
        "path": "/convo",
        "timeout_secs": 60.0,
        "upload_name": "audio.wav",
    },
    "vad": {
        "backend": "energy",
        "interval_ms": 100,
        "threshold_db": -50.0,
        "start_polls": 2,
        "stop_polls": 10,
        "aggressiveness": 2,
    },
    "capture": {
        "sample_rate": 16000,
        "channels": 1,
        "block_ms": 20,
        "preroll_ms": 500,
        "device": None,
        "output_device": None,
    },
    "turn": {
        "barge_in": True,
        "acquire_timeout_secs": 5.0,
        "capture_stop_timeout_secs": 5.0,
        "dialogue_timeout_secs": 60.0,
        "debounce_secs": DEFAULT_DEBOUNCE_SECS,
    },
    "server": {"host": "127.0.0.1", "port": 8710},
    "logging": {"level": "INFO"},
}

_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_DEVICE = {"type": ["string", "integer", "null"]}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "session": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "from_id": {"type": "string", "minLength": 1},
                "to_id": {"type": "string", "minLength": 1},
            },
        },
        "dialogue": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "base_url": {"type": "string", "pattern": "^https?://"},
                "path": {"type": "string", "pattern": "^/"},
                "timeout_secs": _NUMBER,
                "upload_name": {"type": "string", "minLength": 1},
            },
        },
        "vad": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "backend": {"enum": ["energy", "webrtc"]},
                "interval_ms": {"type": "integer", "minimum": 10},
                "threshold_db": {"type": "number", "maximum": 0},
                "start_polls": {"type": "integer", "minimum": 1},
                "stop_polls": {"type": "integer", "minimum": 1},
                "aggressiveness": {"type": "integer", "minimum": 0, "maximum": 3},
            },
        },
        "capture": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "sample_rate": {"enum": [8000, 16000, 32000, 48000]},
                "channels": {"type": "integer", "minimum": 1, "maximum": 2},
                "block_ms": {"type": "integer", "minimum": 5},
                "preroll_ms": {"type": "integer", "minimum": 0},
                "device": _DEVICE,
                "output_device": _DEVICE,
            },
        },
        "turn": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "barge_in": {"type": "boolean"},
                "acquire_timeout_secs": _NUMBER,
                "capture_stop_timeout_secs": _NUMBER,
                "dialogue_timeout_secs": _NUMBER,
                "debounce_secs": {"type": "number", "minimum": 0},
            },
        },
        "server": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
        "logging": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            },
        },
    },
}


class ConfigValidationError(Exception):
    """Raised when config fails to load or fails schema validation."""
    pass


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConvoConfig:
    """Validated convoloop configuration with environment variable overlays."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self._environ = os.environ if environ is None else environ
        self._raw: Dict[str, Any] = {}
        self._validated: Dict[str, Any] = {}
        self._load_and_validate()

    def _load_and_validate(self) -> None:
        """Load config, merge over defaults, validate, apply env overlays."""
        if self.config_path is not None:
            if not self.config_path.exists():
                raise ConfigValidationError(f"Config file not found: {self.config_path}")
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    self._raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigValidationError(f"Config file is not valid JSON: {e}") from e

        if not isinstance(self._raw, dict):
            raise ConfigValidationError("Config root must be a JSON object")

        merged = _deep_merge(DEFAULT_CONFIG, self._raw)
        self._validate(merged)
        self._validated = self._apply_env_overlays(merged)

    @staticmethod
    def _validate(config: Dict[str, Any]) -> None:
        try:
            jsonschema.validate(instance=config, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
            raise ConfigValidationError(
                f"Config validation failed at '{path}': {e.message}"
            ) from e

    def _apply_env_overlays(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply CONVOLOOP_SECTION__KEY environment variables as overrides.

        Section and key are case-insensitive and must already exist.
        Type coercion is based on the existing value's type.
        """
        for env_key, env_val in self._environ.items():
            if not env_key.startswith(ENV_PREFIX):
                continue
            rest = env_key[len(ENV_PREFIX):]
            if "__" not in rest:
                continue
            section, key = (p.lower() for p in rest.split("__", 1))

            if not isinstance(config.get(section), dict):
                continue
            if key not in config[section]:
                logger.debug("Env overlay %s: key '%s' not in section '%s', skipping", env_key, key, section)
                continue

            existing = config[section][key]
            try:
                if isinstance(existing, bool):
                    config[section][key] = env_val.lower() in ("1", "true", "yes")
                elif isinstance(existing, int):
                    config[section][key] = int(env_val)
                elif isinstance(existing, float):
                    config[section][key] = float(env_val)
                else:
                    config[section][key] = env_val
                logger.info("Env overlay applied: %s.%s = %r", section, key, config[section][key])
            except (ValueError, TypeError) as e:
                logger.warning("Env overlay %s: type coercion failed: %s", env_key, e)

        return config

    def get(self, section: str) -> Dict[str, Any]:
        """Get a config section dict (post-overlay)."""
        return self._validated.get(section, {})

    def override(self, section: str, **values: Any) -> None:
        """Apply explicit overrides (CLI flags) and re-validate."""
        candidate = _deep_merge(self._validated, {section: {k: v for k, v in values.items() if v is not None}})
        self._validate(candidate)
        self._validated = candidate

    @property
    def raw(self) -> Dict[str, Any]:
        return self._raw

    # ---- typed accessors ---------------------------------------------------

    def session(self) -> Session:
        s = self.get("session")
        return Session(from_id=s["from_id"], to_id=s["to_id"])

    def dialogue_config(self) -> DialogueConfig:
        return DialogueConfig(**self.get("dialogue"))

    def vad_config(self) -> VADConfig:
        return VADConfig(sample_rate=self.get("capture")["sample_rate"], **self.get("vad"))

    def capture_config(self) -> CaptureConfig:
        c = dict(self.get("capture"))
        c.pop("output_device", None)
        return CaptureConfig(**c)

    def turn_config(self) -> TurnMachineConfig:
        t = dict(self.get("turn"))
        t.pop("debounce_secs", None)
        return TurnMachineConfig(**t)

    @property
    def debounce_secs(self) -> float:
        return float(self.get("turn")["debounce_secs"])

    @property
    def output_device(self):
        return self.get("capture").get("output_device")

    @property
    def server(self) -> Dict[str, Any]:
        return self.get("server")

    @property
    def log_level(self) -> str:
        return self.get("logging")["level"].upper()
