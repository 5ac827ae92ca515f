"""Tests for config — environment-driven settings."""

import pytest

from config import DEFAULT_RESOLUTION, DEFAULT_STRIDE, Settings, load_settings
from security import MAX_FRAME_BYTES

pytestmark = pytest.mark.smoke


def test_defaults_from_empty_environment():
    settings = load_settings({})
    assert settings == Settings()
    assert settings.resolution == DEFAULT_RESOLUTION == 256
    assert settings.stride == DEFAULT_STRIDE == 3
    assert settings.max_frame_bytes == MAX_FRAME_BYTES
    assert settings.log_level == "INFO"


def test_values_read_from_environment():
    settings = load_settings(
        {
            "CHROMASCOPE_RESOLUTION": "64",
            "CHROMASCOPE_STRIDE": "1",
            "CHROMASCOPE_MAX_FRAME_BYTES": "1024",
            "APP_LOG_LEVEL": "debug",
            "SENTRY_ENV": "ci",
        }
    )
    assert settings.resolution == 64
    assert settings.stride == 1
    assert settings.max_frame_bytes == 1024
    assert settings.log_level == "DEBUG"
    assert settings.sentry_env == "ci"


def test_blank_values_use_defaults():
    settings = load_settings({"CHROMASCOPE_STRIDE": "  "})
    assert settings.stride == DEFAULT_STRIDE


@pytest.mark.parametrize(
    "env,name",
    [
        ({"CHROMASCOPE_RESOLUTION": "100"}, "CHROMASCOPE_RESOLUTION"),
        ({"CHROMASCOPE_RESOLUTION": "big"}, "CHROMASCOPE_RESOLUTION"),
        ({"CHROMASCOPE_STRIDE": "0"}, "CHROMASCOPE_STRIDE"),
        ({"CHROMASCOPE_STRIDE": "-2"}, "CHROMASCOPE_STRIDE"),
        ({"CHROMASCOPE_MAX_FRAME_BYTES": "0"}, "CHROMASCOPE_MAX_FRAME_BYTES"),
    ],
)
def test_invalid_values_name_the_variable(env, name):
    with pytest.raises(ValueError, match=name):
        load_settings(env)


def test_reads_os_environ(monkeypatch):
    monkeypatch.setenv("CHROMASCOPE_STRIDE", "7")
    assert load_settings().stride == 7


def test_settings_are_frozen():
    with pytest.raises(AttributeError):
        Settings().stride = 2
