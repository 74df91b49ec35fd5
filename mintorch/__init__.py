"""
mintorch - Deployment orchestrator for the marketplace contracts

Runs build, account, deploy, store and indexer recipes against a local,
testnet or mainnet network, recording what succeeded so reruns are no-ops.
"""

__version__ = "0.1.0"


__all__ = ["MintorchConfig", "load_config", "get_mintorch_home", "resolve"]

from .config import MintorchConfig, load_config, get_mintorch_home, resolve
