from dataclasses import dataclass

from pos_settlement.config import settings
from pos_settlement.services.terminals.base import ChannelFailure, TerminalChannel
from pos_settlement.services.terminals.cloud_channel import CloudTerminalChannel
from pos_settlement.services.terminals.gateway_channel import GatewayTerminalChannel
from pos_settlement.services.terminals.socket_channel import EBIZCHARGE, PAX, SocketTerminalChannel


@dataclass(frozen=True)
class TerminalChannelConfig:
    name: str
    channel: TerminalChannel
    default_terminal_ref: str
    enabled: bool


def get_terminal_channels() -> dict[str, TerminalChannelConfig]:
    cloud = CloudTerminalChannel()
    gateway = GatewayTerminalChannel()
    socket_ref = f"{settings.TERMINAL_HOST}:{settings.TERMINAL_PORT}" if settings.TERMINAL_HOST else ""
    return {
        "pax": TerminalChannelConfig(
            name="pax",
            channel=SocketTerminalChannel(profile=PAX),
            default_terminal_ref=socket_ref,
            enabled=bool(settings.TERMINAL_HOST),
        ),
        "ebizcharge": TerminalChannelConfig(
            name="ebizcharge",
            channel=SocketTerminalChannel(profile=EBIZCHARGE),
            default_terminal_ref=socket_ref,
            enabled=bool(settings.TERMINAL_HOST),
        ),
        "cloud": TerminalChannelConfig(
            name="cloud",
            channel=cloud,
            default_terminal_ref=settings.VALOR_TERMINAL_SERIAL,
            enabled=not cloud.missing_credentials(),
        ),
        "gateway": TerminalChannelConfig(
            name="gateway",
            channel=gateway,
            default_terminal_ref=settings.GATEWAY_TERMINAL_NUMBER,
            enabled=gateway.client.configured,
        ),
    }


def get_enabled_channels() -> list[str]:
    return [name for name, config in get_terminal_channels().items() if config.enabled]


__all__ = [
    "ChannelFailure",
    "CloudTerminalChannel",
    "GatewayTerminalChannel",
    "SocketTerminalChannel",
    "TerminalChannel",
    "TerminalChannelConfig",
    "get_enabled_channels",
    "get_terminal_channels",
]
