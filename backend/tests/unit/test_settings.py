# backend/tests/unit/test_settings.py
import pytest
from pydantic import ValidationError

from whatsflow.config.settings import Settings, validate_environment


def test_test_environment_is_loaded():
    settings = Settings()
    assert settings.environment == "test"
    assert settings.evolution_api_url == "http://evolution.test"


def test_api_url_trailing_slash_is_stripped():
    assert Settings(evolution_api_url="http://evolution.local:8080/").evolution_api_url == "http://evolution.local:8080"


def test_reachability_policy_is_normalized_and_checked():
    assert Settings(reachability_policy=" ANY ").reachability_policy == "any"
    with pytest.raises(ValidationError):
        Settings(reachability_policy="sometimes")


def test_step_budget_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(max_steps_per_run=0)


def test_production_requires_api_key():
    with pytest.raises(SystemExit):
        validate_environment(Settings(environment="production", evolution_api_key=None))


def test_production_requires_attempt_timeout_below_send_timeout():
    with pytest.raises(SystemExit):
        validate_environment(Settings(
            environment="production", evolution_api_key="key",
            messaging_timeout_seconds=5, messaging_attempt_timeout_seconds=5,
        ))
    assert validate_environment(Settings(
        environment="production", evolution_api_key="key",
        messaging_timeout_seconds=15, messaging_attempt_timeout_seconds=4,
    ))
