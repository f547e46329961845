import tomllib
from datetime import timedelta

import pytest

from detsim.config import Config, NetConfig, TcpConfig


def test_parse():
    config = Config.from_toml(
        """
        [net]
        packet_loss_rate = 0.1
        send_latency = { start = { secs = 0, nanos = 1000000 }, end = { secs = 0, nanos = 10000000 } }

        [tcp]
        """
    )
    assert config == Config(
        net=NetConfig(
            packet_loss_rate=0.1,
            send_latency=(timedelta(milliseconds=1), timedelta(milliseconds=10)),
        ),
        tcp=TcpConfig(),
    )


def test_defaults():
    config = Config()
    assert config.net.packet_loss_rate == 0.0
    assert config.net.send_latency == (timedelta(milliseconds=1), timedelta(milliseconds=10))
    assert Config.from_toml("") == config


def test_partial_net_section():
    config = Config.from_toml("[net]\npacket_loss_rate = 0.5\n")
    assert config.net.packet_loss_rate == 0.5
    assert config.net.send_latency == (timedelta(milliseconds=1), timedelta(milliseconds=10))


def test_round_trip():
    config = Config(
        net=NetConfig(
            packet_loss_rate=0.25,
            send_latency=(timedelta(seconds=1, milliseconds=5), timedelta(seconds=3)),
        )
    )
    assert Config.from_toml(config.to_toml()) == config


def test_to_toml_layout():
    data = tomllib.loads(Config().to_toml())
    assert data["net"]["send_latency"]["start"] == {"secs": 0, "nanos": 1000000}
    assert data["net"]["send_latency"]["end"] == {"secs": 0, "nanos": 10000000}
    assert data["tcp"] == {}


def test_str_is_toml():
    config = Config()
    assert str(config) == config.to_toml()


def test_hash_stable_and_sensitive():
    assert Config().hash() == Config().hash()
    other = Config(net=NetConfig(packet_loss_rate=0.1))
    assert other.hash() != Config().hash()
    assert 0 <= other.hash() < 2**64


@pytest.mark.parametrize(
    "text",
    [
        "[net",
        "net = 1",
        "[net]\npacket_loss_rate = 'high'\n",
        "[net]\nsend_latency = { start = { secs = 0 }, end = { secs = 1, nanos = 0 } }\n",
        "[net]\nsend_latency = { start = { secs = 0, nanos = 0 } }\n",
    ],
)
def test_invalid_config(text):
    with pytest.raises(ValueError):
        Config.from_toml(text)