"""
NetworkProfile schema - resolved, network-scoped configuration.

A NetworkProfile is created once at startup by ``mintorch.config.resolve`` and
passed explicitly to every component. It is never mutated.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import quote

# Recognized networks, in menu order
NETWORKS = ("local", "testnet", "mainnet")


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection parameters for the indexer database."""
    user: str
    password: str = field(repr=False)
    host: str
    database: str
    port: int = 5432

    @property
    def url(self) -> str:
        """postgres:// connection URL with user and password percent-encoded."""
        user = quote(self.user, safe="")
        password = quote(self.password, safe="")
        return f"postgres://{user}:{password}@{self.host}:{self.port}/{self.database}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the password."""
        return {
            "user": self.user,
            "host": self.host,
            "database": self.database,
            "port": self.port,
        }


@dataclass(frozen=True)
class NetworkProfile:
    """
    Network-scoped settings for one orchestrator invocation.

    Attributes:
        name: One of NETWORKS
        rpc_endpoint: Chain RPC URL handed to the chain CLI
        account_prefix: Parent account namespace; sub-accounts are "<name>.<account_prefix>"
        credentials_path: Directory holding the chain CLI key files
        database: Indexer database connection parameters
        variables: Extra template values (PROJECT_ROOT, STORE_NAME, ...)
    """
    name: str
    rpc_endpoint: str
    account_prefix: str
    credentials_path: str
    database: DatabaseSettings
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def account(self, name: str) -> str:
        """Fully qualified sub-account id."""
        return f"{name}.{self.account_prefix}"

    def placeholders(self) -> dict[str, str]:
        """Values available to ``${NAME}`` tokens in step templates."""
        values = {
            "NETWORK": self.name,
            "RPC_ENDPOINT": self.rpc_endpoint,
            "ACCOUNT_PREFIX": self.account_prefix,
            "CREDENTIALS_PATH": self.credentials_path,
            "POSTGRES_USER": self.database.user,
            "POSTGRES_PASSWORD": self.database.password,
            "POSTGRES_HOST": self.database.host,
            "POSTGRES_PORT": str(self.database.port),
            "POSTGRES_DATABASE": self.database.database,
            "DATABASE_URL": self.database.url,
        }
        values.update({k: str(v) for k, v in self.variables.items()})
        return values

    def env_overlay(self) -> dict[str, str]:
        """Environment variables layered onto every subprocess."""
        return {
            "NETWORK": self.name,
            "NEAR_ENV": self.name,
            "NEAR_NODE_URL": self.rpc_endpoint,
            "NEAR_CREDENTIALS_PATH": self.credentials_path,
            "POSTGRES_USER": self.database.user,
            "POSTGRES_PASSWORD": self.database.password,
            "POSTGRES_HOST": self.database.host,
            "POSTGRES_PORT": str(self.database.port),
            "POSTGRES_DB": self.database.database,
            "DATABASE_URL": self.database.url,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for display (credentials omitted)."""
        return {
            "name": self.name,
            "rpc_endpoint": self.rpc_endpoint,
            "account_prefix": self.account_prefix,
            "credentials_path": self.credentials_path,
            "database": self.database.to_dict(),
        }
