"""
Tests for configuration loading and layering.
"""

import pytest
from omegaconf.errors import OmegaConfBaseException

from pdfa_backend.configuration import get_default_config_container, load_settings


class TestDefaults:
    def test_packaged_defaults(self):
        settings = load_settings(environ={})
        assert settings.quota.default_daily_limit == 10
        assert settings.quota.expansion_duration_days == 30
        assert settings.conversion.max_files_per_batch == 5
        assert settings.storage.backend == "local"
        assert settings.expansion.request_retention_days == 90

    def test_default_container_is_plain_dict(self):
        container = get_default_config_container()
        assert isinstance(container, dict)
        assert container["expansion"]["processing_time"] == "24 hours"


class TestLayering:
    """Environment variables override defaults; explicit overrides win."""

    def test_environment_overrides(self):
        settings = load_settings(
            environ={"PDFA_DAILY_LIMIT": "3", "S3_BUCKET_NAME": "archive", "PDFA_MAINTENANCE_ENABLED": "false"}
        )
        assert settings.quota.default_daily_limit == 3
        assert settings.storage.s3_bucket == "archive"
        assert settings.maintenance.enabled is False

    def test_request_retention_override(self):
        settings = load_settings(environ={"PDFA_REQUEST_RETENTION_DAYS": "30"})
        assert settings.expansion.request_retention_days == 30

    def test_blank_environment_value_is_ignored(self):
        assert load_settings(environ={"PDFA_DAILY_LIMIT": ""}).quota.default_daily_limit == 10

    def test_explicit_overrides_win(self):
        settings = load_settings(
            overrides={"quota": {"default_daily_limit": 25}}, environ={"PDFA_DAILY_LIMIT": "3"}
        )
        assert settings.quota.default_daily_limit == 25

    def test_invalid_environment_value(self):
        with pytest.raises(ValueError, match="PDFA_DAILY_LIMIT"):
            load_settings(environ={"PDFA_DAILY_LIMIT": "many"})

    def test_unknown_override_key_fails(self):
        with pytest.raises(OmegaConfBaseException):
            load_settings(overrides={"quota": {"daily_limti": 5}}, environ={})
