"""Public API surface for the DEX agent's upstream clients."""

from .advisor_client import AdvisorClient, AdvisorHTTPError
from .chain_client import ChainClient, ChainRPCError, RpcChainClient
from .dex_client import DexClient, DexHTTPError

__all__ = [
    "AdvisorClient",
    "AdvisorHTTPError",
    "ChainClient",
    "ChainRPCError",
    "DexClient",
    "DexHTTPError",
    "RpcChainClient",
]
