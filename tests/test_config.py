"""Tests for configuration module."""

import logging
import os
from dataclasses import FrozenInstanceError
from pathlib import Path
from unittest import mock

import pytest

from relay.config import (
    DEFAULT_MAX_WAIT_MINUTES,
    DEFAULT_POLL_INTERVAL,
    BackendConfig,
    Config,
    PollingConfig,
    _parse_bool,
    _parse_inputs,
    _parse_non_negative_float,
    _parse_positive_int,
    _parse_warning_threshold,
    _validate_backend_kind,
    _validate_log_level,
    _validate_rate_limit_strategy,
    load_config,
    parse_input_pairs,
)
from relay.exceptions import ConfigurationError
from relay.types import BackendKind
from tests.helpers import make_config


class TestConfig:
    """Tests for Config dataclass."""

    def test_defaults(self) -> None:
        config = Config()
        assert config.polling.interval == DEFAULT_POLL_INTERVAL
        assert config.polling.max_wait_minutes == DEFAULT_MAX_WAIT_MINUTES
        assert config.polling.cancelled_is_failure is False
        assert config.backend.ref == "main"
        assert config.backend.jenkins_ref_parameter == "BRANCH"
        assert config.http.max_connections == 10
        assert config.logging_config.level == "INFO"
        assert config.backend_kind is None

    def test_frozen_immutable(self) -> None:
        config = Config()
        with pytest.raises(FrozenInstanceError):
            config.polling = PollingConfig(interval=120)  # type: ignore[misc]

    def test_token_is_not_in_repr(self) -> None:
        backend = BackendConfig(auth_token="super-secret")
        assert "super-secret" not in repr(backend)

    def test_backend_kind(self) -> None:
        assert make_config(kind="azure_devops").backend_kind == BackendKind.AZURE_DEVOPS


class TestWithOverrides:
    """Tests for Config.with_overrides()."""

    def test_replaces_section_fields(self) -> None:
        config = Config().with_overrides(
            backend_ref="release",
            polling_interval=5,
            http_max_connections=2,
            logging_level="DEBUG",
        )
        assert config.backend.ref == "release"
        assert config.polling.interval == 5
        assert config.http.max_connections == 2
        assert config.logging_config.level == "DEBUG"

    def test_none_values_are_ignored(self) -> None:
        config = make_config(ref="develop").with_overrides(backend_ref=None, polling_interval=None)
        assert config.backend.ref == "develop"
        assert config.polling.interval == 1

    def test_original_is_unchanged(self) -> None:
        original = Config()
        original.with_overrides(backend_workflow="deploy.yml")
        assert original.backend.workflow == ""

    @pytest.mark.parametrize("key", ["backend_nonsense", "unknown_field"])
    def test_unknown_key(self, key: str) -> None:
        with pytest.raises(ValueError, match="Unknown configuration override"):
            Config().with_overrides(**{key: 1})


class TestValidateForRun:
    """Tests for Config.validate_for_run()."""

    def test_complete_github_config(self) -> None:
        make_config().validate_for_run()

    def test_missing_backend(self) -> None:
        with pytest.raises(ConfigurationError, match="backend must be one of"):
            make_config(kind="").validate_for_run()

    def test_reports_every_problem(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(workflow="", auth_token="", repository="").validate_for_run()
        message = str(exc_info.value)
        assert "workflow is required" in message
        assert "RELAY_AUTH_TOKEN is required" in message
        assert "GitHub requires owner and repository" in message

    def test_jenkins_needs_url_and_user(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(kind="jenkins").validate_for_run()
        assert "Jenkins requires a base URL" in str(exc_info.value)
        assert "RELAY_AUTH_USER" in str(exc_info.value)

    def test_jenkins_complete(self) -> None:
        make_config(
            kind="jenkins", base_url="https://jenkins.example.com", auth_user="deployer"
        ).validate_for_run()

    def test_azure_devops_needs_numeric_pipeline(self) -> None:
        with pytest.raises(ConfigurationError, match="numeric pipeline id"):
            make_config(kind="azure_devops", workflow="deploy.yml").validate_for_run()
        make_config(kind="azure_devops", workflow="12").validate_for_run()

    def test_max_wait_must_exceed_interval(self) -> None:
        with pytest.raises(ConfigurationError, match="max wait"):
            make_config(interval=60, max_wait_minutes=1).validate_for_run()


class TestParsePositiveInt:
    """Tests for _parse_positive_int helper."""

    def test_valid(self) -> None:
        assert _parse_positive_int("42", "TEST_VAR", 10) == 42

    def test_invalid_non_numeric(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            result = _parse_positive_int("abc", "TEST_VAR", 10)
        assert result == 10
        assert "Invalid TEST_VAR: 'abc' is not a valid integer" in caplog.text

    def test_invalid_zero(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            result = _parse_positive_int("0", "TEST_VAR", 10)
        assert result == 10
        assert "Invalid TEST_VAR: 0 is not positive" in caplog.text


class TestParseHelpers:
    def test_non_negative_float(self) -> None:
        assert _parse_non_negative_float("0", "X", 1.0) == 0.0
        assert _parse_non_negative_float("-1", "X", 1.0) == 1.0
        assert _parse_non_negative_float("soon", "X", 1.0) == 1.0

    def test_warning_threshold(self) -> None:
        assert _parse_warning_threshold("0.5", "X", 0.2) == 0.5
        assert _parse_warning_threshold("1.5", "X", 0.2) == 0.2

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("true", True), ("TRUE", True), ("1", True), ("yes", True), ("false", False), ("", False)],
    )
    def test_parse_bool(self, value: str, expected: bool) -> None:
        assert _parse_bool(value) is expected

    def test_log_level(self, caplog: pytest.LogCaptureFixture) -> None:
        assert _validate_log_level("debug") == "DEBUG"
        with caplog.at_level(logging.WARNING):
            assert _validate_log_level("LOUD") == "INFO"
        assert "Invalid RELAY_LOG_LEVEL: 'LOUD' is not valid" in caplog.text

    def test_rate_limit_strategy(self) -> None:
        assert _validate_rate_limit_strategy("REJECT") == "reject"
        assert _validate_rate_limit_strategy("drop") == "queue"


class TestValidateBackendKind:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("github", "github"),
            ("GitHub", "github"),
            ("azure-devops", "azure_devops"),
            (" jenkins ", "jenkins"),
            ("", ""),
        ],
    )
    def test_normalizes(self, value: str, expected: str) -> None:
        assert _validate_backend_kind(value) == expected

    def test_invalid_is_unset(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            assert _validate_backend_kind("gitlab") == ""
        assert "Invalid RELAY_BACKEND: 'gitlab'" in caplog.text


class TestParseInputs:
    def test_json_object(self) -> None:
        assert _parse_inputs('{"env": "prod", "replicas": 3, "dry_run": true}') == {
            "env": "prod",
            "replicas": "3",
            "dry_run": "true",
        }

    def test_empty(self) -> None:
        assert _parse_inputs("") == {}
        assert _parse_inputs("   ") == {}

    @pytest.mark.parametrize(
        ("value", "message"),
        [
            ("{env: prod}", "not valid JSON"),
            ('["env"]', "must be a JSON object"),
            ('{"env": {"name": "prod"}}', "must be a scalar"),
            ('{"env": null}', "must be a scalar"),
        ],
    )
    def test_malformed_raises(self, value: str, message: str) -> None:
        with pytest.raises(ConfigurationError, match=message):
            _parse_inputs(value)


class TestParseInputPairs:
    def test_pairs(self) -> None:
        assert parse_input_pairs(["env=prod", "note=a=b", "empty="]) == {
            "env": "prod",
            "note": "a=b",
            "empty": "",
        }

    def test_later_pair_wins(self) -> None:
        assert parse_input_pairs(["env=dev", "env=prod"]) == {"env": "prod"}

    @pytest.mark.parametrize("pair", ["env", "=prod"])
    def test_invalid(self, pair: str) -> None:
        with pytest.raises(ConfigurationError, match="expected KEY=VALUE"):
            parse_input_pairs([pair])


@pytest.mark.usefixtures("clean_env")
class TestLoadConfig:
    """Tests for load_config function."""

    def test_defaults_without_env(self) -> None:
        config = load_config()
        assert config.backend.kind == ""
        assert config.backend.ref == "main"
        assert config.polling.interval == DEFAULT_POLL_INTERVAL
        assert config.rate_limit.enabled is True

    def test_loads_from_env_vars(self) -> None:
        env = {
            "RELAY_BACKEND": "azure-devops",
            "RELAY_OWNER": "contoso",
            "RELAY_REPOSITORY": "Platform",
            "RELAY_WORKFLOW": "12",
            "RELAY_REF": "release/2.0",
            "RELAY_INPUTS": '{"environment": "staging"}',
            "RELAY_AUTH_TOKEN": "pat",
            "RELAY_BASE_URL": "https://tfs.example.com/",
            "RELAY_POLL_INTERVAL": "20",
            "RELAY_MAX_WAIT_MINUTES": "90",
            "RELAY_CANCELLED_IS_FAILURE": "true",
            "RELAY_CLOCK_SKEW_ALLOWANCE": "15",
            "RELAY_HTTP_MAX_CONNECTIONS": "4",
            "RELAY_RATE_LIMIT_STRATEGY": "reject",
            "RELAY_LOG_LEVEL": "debug",
            "RELAY_LOG_JSON": "1",
        }
        with mock.patch.dict(os.environ, env):
            config = load_config()

        assert config.backend_kind == BackendKind.AZURE_DEVOPS
        assert config.backend.base_url == "https://tfs.example.com"
        assert config.backend.inputs == {"environment": "staging"}
        assert config.polling.interval == 20
        assert config.polling.max_wait_minutes == 90
        assert config.polling.cancelled_is_failure is True
        assert config.polling.clock_skew_allowance == 15.0
        assert config.http.max_connections == 4
        assert config.rate_limit.strategy == "reject"
        assert config.logging_config.level == "DEBUG"
        assert config.logging_config.json is True

    def test_invalid_numbers_fall_back(self) -> None:
        with mock.patch.dict(os.environ, {"RELAY_POLL_INTERVAL": "often"}):
            config = load_config()
        assert config.polling.interval == DEFAULT_POLL_INTERVAL

    def test_malformed_inputs_raise(self) -> None:
        with mock.patch.dict(os.environ, {"RELAY_INPUTS": "env=prod"}):
            with pytest.raises(ConfigurationError):
                load_config()

    def test_per_backend_circuit_breaker_override(self) -> None:
        env = {
            "RELAY_BACKEND": "jenkins",
            "RELAY_JENKINS_CIRCUIT_BREAKER_FAILURE_THRESHOLD": "2",
        }
        with mock.patch.dict(os.environ, env):
            config = load_config()
        assert config.circuit_breaker.failure_threshold == 2


def test_load_config_reads_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("RELAY_BACKEND=github\nRELAY_POLL_INTERVAL=45\n")
    env = {key: value for key, value in os.environ.items() if not key.startswith("RELAY_")}

    with mock.patch.dict(os.environ, env, clear=True):
        config = load_config(env_file)

    assert config.backend_kind == BackendKind.GITHUB
    assert config.polling.interval == 45
