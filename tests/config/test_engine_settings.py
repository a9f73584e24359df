"""
Tests for the configuration entrypoint, the YAML loaders and the seed
script.
"""

import pytest
import yaml

from approval_config import (
    CONFIG_ENV_VAR,
    DEFAULT_SET_DIR,
    EngineSettings,
    get_engine_settings,
    load_definition_specs,
    load_pipeline_templates,
)
from approval_engines.definition_validation import validate_definition
from approval_engines.rollback import validate_pipeline_template
from scripts.seed_definitions import main as seed_main


def _write_config(path, **engine):
    body = {"config_id": "test", "engine": {"database_url": "sqlite:///x.db", **engine}}
    path.write_text(yaml.safe_dump(body))
    return path


class TestGetEngineSettings:
    def test_packaged_default(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        settings = get_engine_settings()
        assert settings.config_id == "default"
        assert settings.database_url.startswith("sqlite:///")
        assert settings.directory_timeout_seconds == 2.0
        assert settings.notification_max_retries == 3

    def test_environment_variable(self, monkeypatch, tmp_path):
        path = _write_config(tmp_path / "engine.yaml", notification_max_retries=7)
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert get_engine_settings().notification_max_retries == 7

    def test_explicit_path_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(_write_config(tmp_path / "env.yaml")))
        explicit = _write_config(tmp_path / "explicit.yaml", log_level="debug")
        settings = get_engine_settings(explicit)
        assert settings.log_level == "DEBUG"
        assert settings.config_id == "test"

    def test_config_trace_logged(self, tmp_path, captured_logs):
        path = _write_config(tmp_path / "engine.yaml")
        get_engine_settings(path)
        [trace] = [r for r in captured_logs() if r["message"] == "APPROVAL_CONFIG_TRACE"]
        assert trace["config_path"] == str(path)
        assert trace["config_id"] == "test"

    def test_missing_engine_section(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("config_id: broken\n")
        with pytest.raises(KeyError):
            get_engine_settings(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_engine_settings(tmp_path / "absent.yaml")

    @pytest.mark.parametrize(
        "override",
        [
            {"directory_timeout_seconds": 0},
            {"notification_max_retries": 0},
            {"database_url": ""},
        ],
    )
    def test_invalid_values(self, tmp_path, override):
        with pytest.raises(ValueError):
            get_engine_settings(_write_config(tmp_path / "engine.yaml", **override))

    def test_settings_are_frozen(self):
        settings = EngineSettings(database_url="sqlite://")
        with pytest.raises(AttributeError):
            settings.log_level = "DEBUG"


class TestPackagedSet:
    def test_definitions_parse_and_validate(self):
        specs = load_definition_specs(DEFAULT_SET_DIR / "definitions")
        assert [s.code for s in specs] == ["expense_claim", "leave_request"]
        for spec in specs:
            assert validate_definition(spec) == {}

    def test_pipeline_templates_parse_and_validate(self):
        [template] = load_pipeline_templates(DEFAULT_SET_DIR / "pipelines.yaml")
        assert template.code == "document_review"
        validate_pipeline_template(template)


class TestSeedScript:
    def test_seed_is_repeatable(self, tmp_path, capsys):
        config = _write_config(
            tmp_path / "engine.yaml", database_url=f"sqlite:///{tmp_path / 'seed.db'}"
        )

        assert seed_main(["--config", str(config)]) == 0
        first = capsys.readouterr().out
        assert "expense_claim" in first and "created" in first
        assert "document_review" in first

        assert seed_main(["--config", str(config)]) == 0
        second = capsys.readouterr().out
        assert "unchanged" in second
        assert "created" not in second
