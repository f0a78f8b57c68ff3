"""Unit tests for reconciler settings and duration parsing."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from kubeconverge.config import ReconcilerSettings, parse_duration
from kubeconverge.exceptions import ConfigurationError


@pytest.mark.parametrize(
    "value,expected",
    [
        (90, 90.0),
        (1.5, 1.5),
        ("90", 90.0),
        ("90s", 90.0),
        ("5m", 300.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        ("250ms", 0.25),
        (" 2M ", 120.0),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "soon", "5 minutes", "10x", "s", "-5", -1])
def test_parse_duration_rejects_invalid(value):
    with pytest.raises(ConfigurationError):
        parse_duration(value)


def test_default_settings():
    settings = ReconcilerSettings()

    assert settings.max_attempts == 4
    assert settings.poll_interval == 5.0
    assert settings.verify_timeout == 300.0
    assert settings.stable_polls == 2
    assert settings.lease_policy == "queue"
    assert settings.lease_timeout is None
    assert settings.lease_store == "kubernetes"
    assert settings.lease_duration == 60.0


def test_settings_accept_duration_strings():
    settings = ReconcilerSettings(
        poll_interval="2s", verify_timeout="5m", backoff_max="1m", lease_timeout="30s"
    )

    assert settings.poll_interval == 2.0
    assert settings.verify_timeout == 300.0
    assert settings.backoff_max == 60.0
    assert settings.lease_timeout == 30.0


def test_settings_reject_unknown_lease_policy():
    with pytest.raises(PydanticValidationError) as exc_info:
        ReconcilerSettings(lease_policy="steal")

    assert "lease_policy" in str(exc_info.value)


def test_settings_reject_unknown_lease_store():
    with pytest.raises(PydanticValidationError) as exc_info:
        ReconcilerSettings(lease_store="etcd")

    assert "lease_store" in str(exc_info.value)


def test_settings_reject_zero_attempts():
    with pytest.raises(PydanticValidationError):
        ReconcilerSettings(max_attempts=0)


def test_with_overrides_ignores_none():
    settings = ReconcilerSettings(max_workers=2)

    updated = settings.with_overrides(max_workers=None, verify_timeout=None)

    assert updated is settings


def test_with_overrides_applies_and_validates():
    settings = ReconcilerSettings()

    updated = settings.with_overrides(verify_timeout="90s", lease_policy="cancel")

    assert updated.verify_timeout == 90.0
    assert updated.lease_policy == "cancel"
    assert settings.verify_timeout == 300.0

    with pytest.raises(ConfigurationError):
        settings.with_overrides(verify_timeout="whenever")


def test_settings_save_and_load(tmp_path):
    path = tmp_path / "settings.yml"
    original = ReconcilerSettings(max_attempts=6, poll_interval=1.0, kubeconfig="/etc/kube/config")

    original.save(path)
    loaded = ReconcilerSettings.load(path)

    assert loaded == original


def test_settings_load_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        ReconcilerSettings.load(tmp_path / "missing.yml")

    assert "not found" in exc_info.value.message


def test_settings_load_invalid_values(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text("max_attempts: 0\n")

    with pytest.raises(ConfigurationError) as exc_info:
        ReconcilerSettings.load(path)

    assert "Invalid settings" in exc_info.value.message


def test_settings_load_rejects_non_mapping(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        ReconcilerSettings.load(path)


def test_settings_load_accepts_duration_strings(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text("verify_timeout: 10m\npoll_interval: 3s\n")

    settings = ReconcilerSettings.load(path)

    assert settings.verify_timeout == 600.0
    assert settings.poll_interval == 3.0
