"""Configuration loading, schema validation and env overlay tests."""
import json

import pytest

from convoloop.config import ConfigValidationError, ConvoConfig


def _write(tmp_path, data) -> str:
    path = tmp_path / "convoloop.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestConvoConfig:

    def test_defaults_without_file(self):
        cfg = ConvoConfig(environ={})
        assert cfg.get("dialogue")["base_url"] == "http://127.0.0.1:3000"
        assert cfg.vad_config().interval_ms == 100
        assert cfg.capture_config().preroll_ms == 500
        turn = cfg.turn_config()
        assert turn.barge_in is True
        assert turn.dialogue_timeout_secs == 60.0
        assert cfg.log_level == "INFO"

    def test_file_is_deep_merged(self, tmp_path):
        path = _write(tmp_path, {"dialogue": {"base_url": "https://talk.example"}, "vad": {"stop_polls": 5}})
        cfg = ConvoConfig(path, environ={})
        assert cfg.get("dialogue")["base_url"] == "https://talk.example"
        assert cfg.get("dialogue")["path"] == "/convo"
        assert cfg.vad_config().stop_polls == 5
        assert cfg.vad_config().start_polls == 2

    def test_schema_violation_reports_path(self, tmp_path):
        path = _write(tmp_path, {"vad": {"backend": "neural"}})
        with pytest.raises(ConfigValidationError, match="vad.backend"):
            ConvoConfig(path, environ={})

    def test_unknown_key_rejected(self, tmp_path):
        path = _write(tmp_path, {"turn": {"retries": 3}})
        with pytest.raises(ConfigValidationError):
            ConvoConfig(path, environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="not found"):
            ConvoConfig(str(tmp_path / "nope.json"), environ={})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigValidationError, match="not valid JSON"):
            ConvoConfig(str(path), environ={})

    def test_env_overlays_coerce_types(self):
        env = {
            "CONVOLOOP_TURN__BARGE_IN": "false",
            "CONVOLOOP_VAD__STOP_POLLS": "7",
            "CONVOLOOP_VAD__THRESHOLD_DB": "-42.5",
            "CONVOLOOP_SESSION__TO_ID": "agent-9",
            "CONVOLOOP_TURN__UNKNOWN": "1",
            "CONVOLOOP_VAD__INTERVAL_MS": "fast",
            "OTHER_VAR": "x",
        }
        cfg = ConvoConfig(environ=env)
        assert cfg.turn_config().barge_in is False
        assert cfg.vad_config().stop_polls == 7
        assert cfg.vad_config().threshold_db == -42.5
        assert cfg.session().to_id == "agent-9"
        assert cfg.vad_config().interval_ms == 100

    def test_override_revalidates(self):
        cfg = ConvoConfig(environ={})
        cfg.override("session", from_id="alice", to_id=None)
        assert cfg.session().from_id == "alice"
        assert cfg.session().to_id == "agent"
        with pytest.raises(ConfigValidationError):
            cfg.override("server", port=70000)
