"""
Configuration management and loading.

Handles chain, store, provider and logging settings. The signer's private
key is never part of the file; it comes from the environment.
"""

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional

import yaml

from depin_storage.core.errors import ConfigurationError
from depin_storage.storage.db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = "depin_storage.yaml"
CONFIG_PATH_ENV = "DEPIN_STORAGE_CONFIG"
PRIVATE_KEY_ENV = "DEPIN_PRIVATE_KEY"

# Longest allowed heartbeat interval in seconds
MAX_HEARTBEAT_INTERVAL = 15.0

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class NativeCurrency:
    """Gas currency of the target network."""
    name: str = "BNB"
    symbol: str = "tBNB"
    decimals: int = 18


@dataclass(frozen=True)
class ChainConfig:
    """Target network and contract addresses. Configured, never discovered."""
    chain_id: int
    chain_name: str
    rpc_url: str
    token_address: str
    storage_contract_address: str
    explorer_url: Optional[str] = None
    native_currency: NativeCurrency = field(default_factory=NativeCurrency)
    confirmation_timeout: float = 120.0
    request_timeout: float = 30.0

    def __post_init__(self):
        """Validate chain identity and contract addresses."""
        if self.chain_id <= 0:
            raise ConfigurationError("chain_id must be > 0")
        if not self.rpc_url:
            raise ConfigurationError("rpc_url is required")
        if not self.token_address or not _ADDRESS_RE.match(self.token_address):
            raise ConfigurationError(f"Invalid token_address: {self.token_address!r}")
        if not self.storage_contract_address or not _ADDRESS_RE.match(self.storage_contract_address):
            raise ConfigurationError(
                f"Invalid storage_contract_address: {self.storage_contract_address!r}"
            )
        if self.confirmation_timeout <= 0:
            raise ConfigurationError("confirmation_timeout must be > 0")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be > 0")


@dataclass(frozen=True)
class StoreConfig:
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class ProviderConfig:
    """Settings for running a storage provider node."""
    storage_gb: int
    ipfs_api_url: str = "http://127.0.0.1:5001"
    price_per_gb: Decimal = Decimal("1.00")
    name: Optional[str] = None
    heartbeat_interval: float = MAX_HEARTBEAT_INTERVAL

    def __post_init__(self):
        """Validate provider capacity, price and cadence."""
        if self.storage_gb <= 0:
            raise ConfigurationError("storage_gb must be > 0")
        if self.price_per_gb <= 0:
            raise ConfigurationError("price_per_gb must be > 0")
        if self.heartbeat_interval <= 0 or self.heartbeat_interval > MAX_HEARTBEAT_INTERVAL:
            raise ConfigurationError(
                f"heartbeat_interval must be in (0, {MAX_HEARTBEAT_INTERVAL:g}]"
            )


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    chain: ChainConfig
    store: StoreConfig
    provider: Optional[ProviderConfig]
    logging: LoggingConfig

    def require_provider(self) -> ProviderConfig:
        if self.provider is None:
            raise ConfigurationError("Missing required 'provider' section")
        return self.provider


def resolve_config_path(path: Optional[str] = None) -> str:
    """Pick the config path: explicit argument, environment, then default."""
    return path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation: unknown keys are errors, so a typo can never
    silently fall back to a default contract or network.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {'chain', 'store', 'provider', 'logging'}, "top level")

    if 'chain' not in raw_config:
        raise ConfigurationError("Missing required 'chain' section")

    chain = _parse_chain(_section(raw_config, 'chain'))

    store_data = _section(raw_config, 'store', required=False)
    _reject_unknown(store_data, {'db_path'}, "store")
    store = StoreConfig(db_path=str(store_data.get('db_path', DEFAULT_DB_PATH)))

    provider = None
    if 'provider' in raw_config:
        provider = _parse_provider(_section(raw_config, 'provider'))

    logging_data = _section(raw_config, 'logging', required=False)
    _reject_unknown(logging_data, {'level', 'json'}, "logging")
    logging_config = LoggingConfig(
        level=str(logging_data.get('level', 'INFO')).upper(),
        json=bool(logging_data.get('json', False))
    )

    return AppConfig(
        chain=chain,
        store=store,
        provider=provider,
        logging=logging_config
    )


def _section(raw_config: Dict, name: str, required: bool = True) -> Dict:
    data = raw_config.get(name)
    if data is None:
        if required:
            raise ConfigurationError(f"Missing required '{name}' section")
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown_keys}")


def _require(data: Dict, key: str, path: str):
    if key not in data or data[key] in (None, ""):
        raise ConfigurationError(f"Missing required '{key}' in {path}")
    return data[key]


def _number(data: Dict, key: str, default, cast, section: str):
    """Read an optional numeric key, rejecting values that do not convert."""
    value = data.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{key}' in {section} must be a number, got {value!r}")


def _parse_chain(data: Dict) -> ChainConfig:
    """Parse and validate the chain section.

    Raises:
        ConfigurationError: If a required key is missing or invalid
    """
    allowed_keys = {
        'chain_id', 'chain_name', 'rpc_url', 'explorer_url', 'native_currency',
        'token_address', 'storage_contract_address',
        'confirmation_timeout', 'request_timeout'
    }
    _reject_unknown(data, allowed_keys, "chain")

    chain_id = _require(data, 'chain_id', "chain")
    if isinstance(chain_id, str):
        try:
            chain_id = int(chain_id, 0)
        except ValueError:
            raise ConfigurationError(f"'chain_id' must be an integer, got {chain_id!r}")
    if isinstance(chain_id, bool) or not isinstance(chain_id, int):
        raise ConfigurationError("'chain_id' must be an integer")

    currency_data = data.get('native_currency') or {}
    if not isinstance(currency_data, dict):
        raise ConfigurationError("'native_currency' must be a dictionary")
    _reject_unknown(currency_data, {'name', 'symbol', 'decimals'}, "chain.native_currency")
    default_currency = NativeCurrency()
    currency = NativeCurrency(
        name=str(currency_data.get('name', default_currency.name)),
        symbol=str(currency_data.get('symbol', default_currency.symbol)),
        decimals=_number(currency_data, 'decimals', default_currency.decimals, int, "chain.native_currency")
    )

    return ChainConfig(
        chain_id=chain_id,
        chain_name=str(data.get('chain_name') or f"Chain {chain_id}"),
        rpc_url=str(_require(data, 'rpc_url', "chain")),
        token_address=str(_require(data, 'token_address', "chain")),
        storage_contract_address=str(_require(data, 'storage_contract_address', "chain")),
        explorer_url=data.get('explorer_url'),
        native_currency=currency,
        confirmation_timeout=_number(data, 'confirmation_timeout', 120, float, "chain"),
        request_timeout=_number(data, 'request_timeout', 30, float, "chain")
    )


def _parse_provider(data: Dict) -> ProviderConfig:
    """Parse and validate the provider section.

    Raises:
        ConfigurationError: If a required key is missing or invalid
    """
    allowed_keys = {'ipfs_api_url', 'storage_gb', 'price_per_gb', 'name', 'heartbeat_interval'}
    _reject_unknown(data, allowed_keys, "provider")

    storage_gb = _require(data, 'storage_gb', "provider")
    if isinstance(storage_gb, bool) or not isinstance(storage_gb, int):
        raise ConfigurationError("'storage_gb' in provider must be an integer")

    try:
        price = Decimal(str(data.get('price_per_gb', "1.00")))
    except InvalidOperation:
        raise ConfigurationError(f"Invalid 'price_per_gb': {data.get('price_per_gb')!r}")

    return ProviderConfig(
        storage_gb=storage_gb,
        ipfs_api_url=str(data.get('ipfs_api_url', "http://127.0.0.1:5001")).rstrip("/"),
        price_per_gb=price,
        name=data.get('name'),
        heartbeat_interval=_number(data, 'heartbeat_interval', MAX_HEARTBEAT_INTERVAL, float, "provider")
    )
