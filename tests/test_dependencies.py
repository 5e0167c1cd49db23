from pos_settlement.dependencies import get_channel_registry, get_gateway_client
from pos_settlement.services.terminals import get_enabled_channels, get_terminal_channels
from pos_settlement.services.terminals.cloud_channel import CloudTerminalChannel
from pos_settlement.services.terminals.gateway_channel import GatewayTerminalChannel
from pos_settlement.services.terminals.socket_channel import SocketTerminalChannel


def test_registry_exposes_every_channel(monkeypatch):
    monkeypatch.setenv("TERMINAL_HOST", "10.0.0.5")
    monkeypatch.setenv("TERMINAL_PORT", "10010")
    monkeypatch.setenv("VALOR_TERMINAL_SERIAL", "SN-42")
    monkeypatch.setenv("GATEWAY_TERMINAL_NUMBER", "T-1")

    registry = get_terminal_channels()

    assert set(registry) == {"pax", "ebizcharge", "cloud", "gateway"}
    assert isinstance(registry["pax"].channel, SocketTerminalChannel)
    assert registry["pax"].channel.name == "pax"
    assert registry["ebizcharge"].channel.name == "ebizcharge"
    assert registry["pax"].default_terminal_ref == "10.0.0.5:10010"
    assert isinstance(registry["cloud"].channel, CloudTerminalChannel)
    assert registry["cloud"].default_terminal_ref == "SN-42"
    assert isinstance(registry["gateway"].channel, GatewayTerminalChannel)
    assert registry["gateway"].default_terminal_ref == "T-1"
    assert all(config.enabled for config in registry.values())


def test_channels_without_credentials_are_disabled(monkeypatch):
    monkeypatch.setenv("VALOR_API_API_KEY", "")
    monkeypatch.setenv("AUTHORIZE_NET_API_LOGIN_ID", "")
    monkeypatch.setenv("TERMINAL_HOST", "")

    enabled = get_enabled_channels()

    assert "cloud" not in enabled
    assert "gateway" not in enabled
    assert "pax" not in enabled


def test_lan_terminals_disabled_when_host_unset(monkeypatch):
    monkeypatch.delenv("TERMINAL_HOST", raising=False)

    registry = get_terminal_channels()

    for name in ("pax", "ebizcharge"):
        assert not registry[name].enabled
        assert registry[name].default_terminal_ref == ""
    assert "pax" not in get_enabled_channels()


def test_dependencies_are_cached():
    assert get_gateway_client() is get_gateway_client()
    assert get_channel_registry() is get_channel_registry()
