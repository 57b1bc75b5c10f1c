# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from config import AppConfig, DeviceConfig, DeviceMode, StreamSettings

_DEVICE_ENV = (
    "AUDIO_DEVICE_MODE",
    "AGGREGATE_AUDIO_DEVICE",
    "SYSTEM_AUDIO_DEVICE",
    "AUDIO_DEVICE_CHANNELS",
    "OPERATOR_AUDIO_CHANNEL",
    "OPERATOR_AUDIO_CHANNEL_COUNT",
    "CUSTOMER_AUDIO_CHANNEL",
    "CUSTOMER_AUDIO_CHANNEL_COUNT",
    "AUDIO_SAMPLE_RATE_HZ",
    "AUDIO_CHUNK_MS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _DEVICE_ENV:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------
# DeviceConfig
# ---------------------------------------------------------------------

def test_aggregate_defaults_from_env():
    config = DeviceConfig.load_from_env()

    assert config.mode is DeviceMode.AGGREGATE
    assert config.device_name == "Aggregate Device"
    assert config.channels == 2
    assert config.operator_channel == 0
    assert config.counterparty_channel == 1
    assert config.frame_width_bytes == 4
    assert config.frames_per_chunk == 320


def test_channels_are_one_indexed_in_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AGGREGATE_AUDIO_DEVICE", "Call Aggregate")
    monkeypatch.setenv("OPERATOR_AUDIO_CHANNEL", "2")
    monkeypatch.setenv("CUSTOMER_AUDIO_CHANNEL", "1")

    config = DeviceConfig.load_from_env()

    assert config.device_name == "Call Aggregate"
    assert config.operator_channel == 1
    assert config.counterparty_channel == 0


def test_single_mode_is_mono(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUDIO_DEVICE_MODE", "single")
    monkeypatch.setenv("SYSTEM_AUDIO_DEVICE", "BlackHole 2ch")

    config = DeviceConfig.load_from_env()

    assert config.mode is DeviceMode.SINGLE
    assert config.channels == 1
    assert config.device_name == "BlackHole 2ch"


def test_overlapping_channel_groups_rejected():
    with pytest.raises(ValueError, match="overlap"):
        DeviceConfig(
            mode=DeviceMode.AGGREGATE,
            device_name="Agg",
            channels=3,
            operator_channel=0,
            operator_channel_count=2,
            counterparty_channel=1,
            counterparty_channel_count=1,
        )


def test_groups_must_cover_every_channel():
    with pytest.raises(ValueError):
        DeviceConfig(mode=DeviceMode.AGGREGATE, device_name="Agg", channels=4)


def test_invalid_mapping_from_env_raises(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPERATOR_AUDIO_CHANNEL", "2")
    monkeypatch.setenv("CUSTOMER_AUDIO_CHANNEL", "2")

    with pytest.raises(ValueError):
        DeviceConfig.load_from_env()


# ---------------------------------------------------------------------
# StreamSettings / AppConfig
# ---------------------------------------------------------------------

def test_margin_must_be_below_limits():
    with pytest.raises(ValueError):
        StreamSettings(idle_timeout_s=1.0, restart_margin_s=1.0)


def test_app_config_timing_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENGINE_IDLE_TIMEOUT_S", "12")
    monkeypatch.setenv("SESSION_STOP_GRACE_S", "4.5")
    monkeypatch.setenv("CALL_MODE", "vendor")

    config = AppConfig.load_from_env()

    assert config.stream.idle_timeout_s == 12.0
    assert config.stream.max_session_s == 290.0
    assert config.session_stop_grace_s == 4.5
    assert config.default_call_mode == "vendor"
