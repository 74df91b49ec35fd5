"""
Configuration management for mintorch.

Two layers:
- MintorchConfig: tool settings loaded from ``$MINTORCH_HOME/config.yaml``
  (state and log locations, project root, store parameters, per-network overrides).
- NetworkProfile: the immutable, network-scoped settings resolved by ``resolve``
  from an environment mapping, the config file and the credentials source.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from mintorch.errors import ConfigError, MissingField, UnknownNetwork
from mintorch.schemas import NETWORKS, DatabaseSettings, NetworkProfile

logger = logging.getLogger(__name__)

DEFAULT_RPC_ENDPOINTS = {
    "local": "http://127.0.0.1:3030",
    "testnet": "https://rpc.testnet.near.org",
    "mainnet": "https://rpc.mainnet.near.org",
}

# Resolution fails unless every one of these is found somewhere
REQUIRED_FIELDS = (
    "postgres_user",
    "postgres_password",
    "postgres_host",
    "postgres_database",
    "account_prefix",
)


def get_mintorch_home() -> Path:
    """Directory holding config.yaml, .env, state and logs."""
    home = os.environ.get("MINTORCH_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/mintorch").expanduser()


@dataclass
class MintorchConfig:
    """Tool-level settings from config.yaml."""
    project_root: str = "."
    state_dir: Optional[str] = None
    log_dir: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "structured"
    console_logging: bool = True
    env_file: Optional[str] = None
    credentials_file: Optional[str] = None
    recipes_file: Optional[str] = None
    store_name: str = "store"
    store_symbol: str = "STORE"
    store_owner: Optional[str] = None
    step_timeout_s: Optional[float] = None
    indexer_startup_timeout_s: Optional[float] = None
    networks: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def project_path(self) -> Path:
        return Path(self.project_root).expanduser().resolve()

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return get_mintorch_home() / "state"

    @property
    def log_path(self) -> Path:
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return get_mintorch_home() / "logs"

    def get_log_file_path(self) -> Path:
        """Log file for today's runs."""
        return self.log_path / f"mintorch-{datetime.now().strftime('%Y-%m-%d')}.log"

    def network_settings(self, network: str) -> dict[str, Any]:
        """Per-network overrides from the ``networks`` section."""
        return dict(self.networks.get(network) or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MintorchConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        networks = data.get("networks") or {}
        if not isinstance(networks, dict):
            raise ConfigError("'networks' must be a mapping of network name to settings")
        for name in networks:
            if name not in NETWORKS:
                raise UnknownNetwork(name, NETWORKS)
        if data.get("log_format", "structured") not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {data['log_format']!r}")
        return cls(**data)


def load_config(config_path: Optional[Path] = None) -> MintorchConfig:
    """
    Load tool configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $MINTORCH_HOME/config.yaml

    Returns:
        MintorchConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file is not valid YAML or has unknown keys
    """
    if config_path is None:
        config_path = get_mintorch_home() / "config.yaml"
    config_path = Path(config_path).expanduser()

    if not config_path.exists():
        raise FileNotFoundError(f"mintorch config.yaml not found at {config_path}")

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {config_path} must be a mapping")

    config = MintorchConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)
        else:
            logger.warning(f"env_file does not exist: {env_path}")

    return config


def _load_credentials(path: Optional[str], network: str) -> dict[str, Any]:
    """Read the credentials source: flat keys, optionally overridden by a per-network section."""
    if not path:
        return {}
    creds_path = Path(path).expanduser()
    if not creds_path.exists():
        raise ConfigError(f"Credentials file not found: {creds_path}")
    try:
        with open(creds_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in credentials file {creds_path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Credentials file {creds_path} must be a mapping")

    flat = {k: v for k, v in data.items() if k not in NETWORKS}
    section = data.get(network) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Credentials section '{network}' must be a mapping")
    flat.update(section)
    return flat


def _lookup(key: str, *sources: Mapping[str, Any]) -> Optional[str]:
    """First non-empty value for key (lower or upper case) across sources."""
    for source in sources:
        for candidate in (key, key.upper()):
            value = source.get(candidate)
            if value not in (None, ""):
                return str(value)
    return None


def resolve(
    network_name: str,
    environment: Mapping[str, str],
    config: Optional[MintorchConfig] = None,
) -> NetworkProfile:
    """
    Resolve the NetworkProfile for one network.

    Lookup order per field: environment, the config file's network section,
    the credentials source. Nothing is returned unless every required field
    is present.

    Args:
        network_name: One of local, testnet, mainnet
        environment: Environment mapping (normally os.environ), read only
        config: Tool configuration, defaults to MintorchConfig()

    Returns:
        NetworkProfile

    Raises:
        UnknownNetwork: If network_name is not recognized
        MissingField: If a required field is absent
        ConfigError: If the credentials source is unreadable
    """
    if network_name not in NETWORKS:
        raise UnknownNetwork(network_name, NETWORKS)

    config = config or MintorchConfig()
    network_section = config.network_settings(network_name)
    credentials = _load_credentials(config.credentials_file, network_name)
    sources = (environment, network_section, credentials)

    values = {key: _lookup(key, *sources) for key in REQUIRED_FIELDS}
    missing = [key for key in REQUIRED_FIELDS if values[key] is None]
    if missing:
        raise MissingField(missing[0], missing, network=network_name)

    rpc_endpoint = _lookup("rpc_endpoint", *sources) or DEFAULT_RPC_ENDPOINTS[network_name]
    credentials_path = (
        _lookup("near_credentials_path", *sources)
        or _lookup("credentials_path", *sources)
        or str(Path("~/.near-credentials").expanduser() / network_name)
    )
    port_value = _lookup("postgres_port", *sources) or "5432"
    try:
        port = int(port_value)
    except ValueError:
        raise ConfigError(f"postgres_port must be an integer, got {port_value!r}")

    database = DatabaseSettings(
        user=values["postgres_user"],
        password=values["postgres_password"],
        host=values["postgres_host"],
        database=values["postgres_database"],
        port=port,
    )

    account_prefix = values["account_prefix"]
    variables = {
        "PROJECT_ROOT": str(config.project_path),
        "STORE_NAME": config.store_name,
        "STORE_SYMBOL": config.store_symbol,
        "STORE_OWNER": config.store_owner or account_prefix,
    }

    return NetworkProfile(
        name=network_name,
        rpc_endpoint=rpc_endpoint,
        account_prefix=account_prefix,
        credentials_path=credentials_path,
        database=database,
        variables=variables,
    )
