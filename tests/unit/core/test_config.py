"""Tests for settings models and YAML/env loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from plinth.core.config import (
    DEFAULT_PIPELINE_STEPS,
    GenerationSettings,
    PipelineSettings,
    PlinthSettings,
    RetrySettings,
    SearchSettings,
    load_settings,
)


class TestDefaults:
    def test_defaults_match_documented_values(self) -> None:
        settings = PlinthSettings()

        assert settings.database.url == "sqlite:///./state/plinth.db"
        assert settings.retry.schedule_ms == (300.0, 800.0, 1600.0)
        assert settings.retry.jitter_ratio == 0.25
        assert settings.retry.floor_ms == 50.0
        assert settings.retry.max_retries == 3
        assert settings.retry.timeout_seconds == 30.0
        assert settings.search.max_concurrency == 2
        assert settings.search.timeout_seconds == 15.0
        assert settings.generation.timeout_seconds is None
        assert settings.pipeline.steps == DEFAULT_PIPELINE_STEPS
        assert settings.pipeline.step_lease_seconds is None

    def test_settings_are_frozen(self) -> None:
        settings = PlinthSettings()

        with pytest.raises(ValidationError):
            settings.retry.max_retries = 5  # type: ignore[misc]

    def test_unknown_top_level_section_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PlinthSettings(telemetry={})  # type: ignore[call-arg]


class TestValidation:
    def test_empty_schedule_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least one delay"):
            RetrySettings(schedule_ms=())

    def test_jitter_ratio_must_be_below_one(self) -> None:
        with pytest.raises(ValidationError):
            RetrySettings(jitter_ratio=1.0)

    def test_duplicate_steps_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate"):
            PipelineSettings(steps=("a", "b", "a"))

    def test_blank_step_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PipelineSettings(steps=("a", " "))

    def test_search_depth_is_constrained(self) -> None:
        with pytest.raises(ValidationError):
            SearchSettings(search_depth="deep")

    def test_log_level_normalized(self) -> None:
        assert PlinthSettings(logging={"level": "debug"}).logging.level == "DEBUG"  # type: ignore[arg-type]


class TestApiKeyResolution:
    def test_explicit_key_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")

        assert GenerationSettings(api_key="explicit").resolve_api_key() == "explicit"

    def test_falls_back_to_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TAVILY_API_KEY", "tvly-123")

        assert SearchSettings().resolve_api_key() == "tvly-123"

    def test_missing_key_is_none_not_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TAVILY_API_KEY", raising=False)

        assert SearchSettings().resolve_api_key() is None


class TestLoadSettings:
    def test_loads_yaml(self, tmp_path: Path) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text(
            "database:\n"
            "  url: sqlite:///runs.db\n"
            "retry:\n"
            "  schedule_ms: [100, 200]\n"
            "  max_retries: 1\n"
            "pipeline:\n"
            "  version: v2\n"
            "  steps: [fetch, rank]\n"
            "  step_lease_seconds: 600\n"
        )

        settings = load_settings(config)

        assert settings.database.url == "sqlite:///runs.db"
        assert settings.retry.schedule_ms == (100.0, 200.0)
        assert settings.retry.max_retries == 1
        assert settings.pipeline.steps == ("fetch", "rank")
        assert settings.pipeline.step_lease_seconds == 600

    def test_env_var_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text("database:\n  url: sqlite:///file.db\n")
        monkeypatch.setenv("PLINTH_DATABASE__URL", "sqlite:///env.db")

        assert load_settings(config).database.url == "sqlite:///env.db"

    def test_expands_env_references(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text('generation:\n  model: "${PLINTH_TEST_MODEL:-gpt-4o-mini}"\n  base_url: "${PLINTH_TEST_BASE}"\n')
        monkeypatch.delenv("PLINTH_TEST_MODEL", raising=False)
        monkeypatch.setenv("PLINTH_TEST_BASE", "https://llm.internal/v1")

        settings = load_settings(config)

        assert settings.generation.model == "gpt-4o-mini"
        assert settings.generation.base_url == "https://llm.internal/v1"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_invalid_values_raise_validation_error(self, tmp_path: Path) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text("retry:\n  max_retries: -1\n")

        with pytest.raises(ValidationError):
            load_settings(config)
