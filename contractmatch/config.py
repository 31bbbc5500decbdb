"""Process-wide configuration.

Meant to be set once at startup. Chains read the values when they are
constructed, so changing them later only affects chains created afterwards.
"""

import os
from dataclasses import dataclass, replace

import keyring

DEFAULT_RPC_TIMEOUT = 10
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_KEYRING_SERVICE = "contractmatch"


@dataclass(frozen=True)
class Config:
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    keyring_service: str = DEFAULT_KEYRING_SERVICE


_config = Config()


def get_config():
    return _config


def set_config(config):
    global _config
    _config = config


def get_rpc_timeout():
    return _config.rpc_timeout


def set_rpc_timeout(timeout):
    set_config(replace(_config, rpc_timeout=timeout))


def get_ipfs_gateway():
    return _config.ipfs_gateway


def set_ipfs_gateway(gateway):
    set_config(replace(_config, ipfs_gateway=gateway))


def resolve_secret(name, config=None):
    """Look up an API key in the system keyring, then in the environment."""
    config = config or _config
    secret = keyring.get_password(config.keyring_service, name)
    if secret:
        return secret
    return os.environ.get(name)
