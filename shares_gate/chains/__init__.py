from typing import Dict, List, Optional

from ..config import AppConfig
from ..rpc import RPCClient
from .base import Blockchain
from .evm import EvmBlockchain
from .sui import SuiBlockchain

__all__ = ["Blockchain", "EvmBlockchain", "SuiBlockchain", "create_blockchains", "make_rpc_clients"]


def make_rpc_clients(cfg: AppConfig) -> Dict[str, RPCClient]:
    clients: Dict[str, RPCClient] = {}
    if cfg.evm:
        clients[cfg.evm.name] = RPCClient(
            cfg.evm.rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
        )
    if cfg.sui:
        clients[cfg.sui.name] = RPCClient(
            cfg.sui.rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
        )
    return clients


def create_blockchains(
    cfg: AppConfig, rpc_clients: Optional[Dict[str, RPCClient]] = None
) -> List[Blockchain]:
    clients = rpc_clients if rpc_clients is not None else make_rpc_clients(cfg)
    chains: List[Blockchain] = []
    if cfg.evm:
        chains.append(EvmBlockchain(cfg.evm, clients[cfg.evm.name]))
    if cfg.sui:
        chains.append(SuiBlockchain(cfg.sui, clients[cfg.sui.name]))
    return chains
