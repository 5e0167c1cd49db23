from functools import lru_cache

from pos_settlement.services.gateway_client import GatewayClient
from pos_settlement.services.reconciliation import ReconciliationEngine
from pos_settlement.services.terminals import TerminalChannelConfig, get_terminal_channels


@lru_cache
def get_gateway_client() -> GatewayClient:
    return GatewayClient()


@lru_cache
def get_channel_registry() -> dict[str, TerminalChannelConfig]:
    # Cached so channel state (cloud API token) survives between requests.
    return get_terminal_channels()


@lru_cache
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(client=get_gateway_client())
