"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from src.integrations.base import DataType, ProviderName
from src.integrations.config_loader import (
    ConfigValidationError,
    SchedulerConfig,
    SyncConfig,
    _validate_and_build,
    is_valid_credential,
    load_sync_config,
    reload_sync_config,
)

MINIMAL_PROVIDER = {
    "auth_url": "https://auth.test/authorize",
    "token_url": "https://auth.test/token",
    "api_base_url": "https://api.test/",
}


class TestConfigLoading:
    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"
        assert set(sync_config.providers) == {ProviderName.FITBIT, ProviderName.GOOGLE_FIT}

    def test_fitbit_block(self, sync_config: SyncConfig) -> None:
        fitbit = sync_config.provider("fitbit")
        assert fitbit.token_auth_method == "basic"
        assert fitbit.requires_pkce
        assert fitbit.requests_per_hour == 150
        assert fitbit.webhooks.supported
        assert fitbit.webhooks.signature_header == "X-Fitbit-Signature"
        assert DataType.SLEEP in fitbit.supported_data_types

    def test_google_fit_block(self, sync_config: SyncConfig) -> None:
        google = sync_config.provider(ProviderName.GOOGLE_FIT)
        assert google.token_auth_method == "body"
        assert google.extra_auth_params == {"access_type": "offline", "prompt": "consent"}
        assert not google.webhooks.supported

    def test_scheduler_defaults(self, scheduler_config: SchedulerConfig) -> None:
        assert scheduler_config.max_retries == 3
        assert scheduler_config.dedup_window == timedelta(minutes=5)
        assert scheduler_config.oauth_state_ttl == timedelta(minutes=10)
        assert scheduler_config.job_retention == timedelta(hours=24)
        assert scheduler_config.persist_batch_size == 1000

    def test_reaper_timeout_has_floor(self, scheduler_config: SchedulerConfig) -> None:
        assert scheduler_config.reaper_timeout(1) == timedelta(minutes=10)
        assert scheduler_config.reaper_timeout(20) == timedelta(seconds=1200)

    def test_unknown_provider_lookup(self, sync_config: SyncConfig) -> None:
        with pytest.raises(ValueError):
            sync_config.provider("strava")


class TestConfigValidation:
    def test_valid_minimal_config(self) -> None:
        config = _validate_and_build({"providers": {"fitbit": dict(MINIMAL_PROVIDER)}})
        fitbit = config.provider(ProviderName.FITBIT)
        assert fitbit.api_base_url == "https://api.test"
        assert config.scheduler == SchedulerConfig()

    def test_missing_providers_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="providers"):
            _validate_and_build({"version": "1.0"})

    def test_missing_endpoint_raises(self) -> None:
        raw = {"providers": {"fitbit": {"auth_url": "https://auth.test"}}}
        with pytest.raises(ConfigValidationError, match="token_url"):
            _validate_and_build(raw)

    def test_unknown_data_type_raises(self) -> None:
        raw = {"providers": {"fitbit": {**MINIMAL_PROVIDER, "supported_data_types": ["steps", "mood"]}}}
        with pytest.raises(ConfigValidationError, match="mood"):
            _validate_and_build(raw)

    def test_bad_auth_method_raises(self) -> None:
        raw = {"providers": {"fitbit": {**MINIMAL_PROVIDER, "token_auth_method": "jwt"}}}
        with pytest.raises(ConfigValidationError, match="token_auth_method"):
            _validate_and_build(raw)

    def test_non_numeric_scheduler_value_raises(self) -> None:
        raw = {"providers": {"fitbit": dict(MINIMAL_PROVIDER)}, "scheduler": {"max_retries": "many"}}
        with pytest.raises(ConfigValidationError, match="max_retries"):
            _validate_and_build(raw)

    def test_negative_scheduler_value_raises(self) -> None:
        raw = {"providers": {"fitbit": dict(MINIMAL_PROVIDER)}, "scheduler": {"max_retries": -1}}
        with pytest.raises(ConfigValidationError, match="negative"):
            _validate_and_build(raw)

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text("providers: [unclosed")
        with pytest.raises(ConfigValidationError):
            load_sync_config(path=config_file)

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(path=Path("/nonexistent/path/sync_config.yaml"))

    def test_hot_reload(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text(
            """
version: "2.0-test"
providers:
  fitbit:
    auth_url: https://auth.test/authorize
    token_url: https://auth.test/token
    api_base_url: https://api.test
scheduler:
  max_retries: 5
""".strip()
        )
        try:
            new_config = reload_sync_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert new_config.scheduler.max_retries == 5
        finally:
            reload_sync_config()


class TestCredentialCheck:
    @pytest.mark.parametrize("value", ["23ABCD", "a1b2c3d4e5f6"])
    def test_real_values(self, value: str) -> None:
        assert is_valid_credential(value)

    @pytest.mark.parametrize(
        "value", [None, "", "   ", "# comment", "your-client-id", "REPLACE_ME", "placeholder-secret"]
    )
    def test_placeholders(self, value: str | None) -> None:
        assert not is_valid_credential(value)
