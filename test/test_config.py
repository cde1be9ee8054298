"""Tests for environment-driven configuration."""
import pytest

from standardcam.core.config import DEFAULT_STUN_URL, RelayConfig, SessionConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('STANDARDCAM_HOST', 'STANDARDCAM_PORT', 'STANDARDCAM_CORS_ORIGINS',
                 'STANDARDCAM_LOG_LEVEL', 'STANDARDCAM_SERVER_URL', 'STUN_URL',
                 'TURN_ADDRESS', 'TURN_USERNAME', 'TURN_PASSWORD', 'STANDARDCAM_STRIDE'):
        monkeypatch.delenv(name, raising=False)


def test_relay_defaults():
    config = RelayConfig()
    assert config.port == 3001
    assert config.host == "0.0.0.0"


def test_relay_environment_overrides(monkeypatch):
    monkeypatch.setenv('STANDARDCAM_PORT', '4000')
    monkeypatch.setenv('STANDARDCAM_LOG_LEVEL', 'DEBUG')
    config = RelayConfig()
    assert config.port == 4000
    assert config.log_level == 'DEBUG'


def test_session_defaults_build_stun_server():
    config = SessionConfig()
    assert config.send_interval == 0.5
    assert config.buffer_ceiling == 5_000_000
    assert config.downsample_stride == 10
    [server] = config.rtc_config.iceServers
    assert server.urls == DEFAULT_STUN_URL


def test_turn_server_added_when_configured(monkeypatch):
    monkeypatch.setenv('TURN_ADDRESS', 'turn.example.org:3478')
    monkeypatch.setenv('TURN_USERNAME', 'alice')
    config = SessionConfig()

    stun, turn = config.rtc_config.iceServers
    assert turn.urls == "turn:turn.example.org:3478"
    assert turn.username == "alice"


def test_stride_from_environment(monkeypatch):
    monkeypatch.setenv('STANDARDCAM_STRIDE', '4')
    assert SessionConfig().downsample_stride == 4


@pytest.mark.parametrize("kwargs", [{"send_interval": 0}, {"downsample_stride": 0}])
def test_invalid_session_settings(kwargs):
    with pytest.raises(ValueError):
        SessionConfig(**kwargs)
