"""Runtime configuration for the worker, loaded from the environment."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from eth_account import Account

from taskcue.errors import ConfigError
from taskcue.registry import TaskRegistry

DEPLOYMENT_FILE = "deployed-contract.json"
DEPLOYMENT_SEARCH_DIRS = (".", "..", "../contracts", "../../contracts")
DEFAULT_NETWORK = "monad"
LOCAL_NETWORK = "local"

_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(slots=True, frozen=True)
class NetworkConfig:
    """One known network."""

    name: str
    chain_id: int
    provider_url: str


NETWORKS: dict[str, NetworkConfig] = {
    "localhost": NetworkConfig("localhost", 31337, "http://127.0.0.1:8545"),
    "sepolia": NetworkConfig("sepolia", 11155111, "https://rpc.sepolia.org"),
    "mumbai": NetworkConfig("mumbai", 80001, "https://rpc-mumbai.maticvigil.com"),
    "monad": NetworkConfig("monad", 10143, "https://testnet-rpc.monad.xyz"),
}


@dataclass(slots=True)
class Deployment:
    """Contents of a deployed-contract.json file."""

    address: str
    network: str | None = None
    path: Path | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Settings for one worker process."""

    network: str
    private_key: str = field(repr=False)
    registry_address: str | None = None
    provider_url: str | None = None
    chain_id: int | None = None
    ledger_path: Path = Path(".taskcue-ledger.db")
    worker_name: str = "taskcue-worker"
    poll_interval: float = 5.0
    auto_withdraw_threshold: int | None = None
    log_level: str = "INFO"

    @property
    def identity(self) -> str:
        return Account.from_key(self.private_key).address

    @property
    def is_local(self) -> bool:
        return self.network == LOCAL_NETWORK

    @classmethod
    def from_env(cls, network: str | None = None, *, search_from: Path | None = None) -> WorkerSettings:
        """
        Load settings from the environment.

        Raises:
            ConfigError: Missing or malformed key, address or network.
        """
        private_key = _require_private_key(os.getenv("PRIVATE_KEY"))
        deployment = find_deployment(search_from)

        name = network or (deployment.network if deployment else None)
        name = name or os.getenv("DEFAULT_NETWORK") or DEFAULT_NETWORK
        name = name.lower()

        settings = cls(
            network=name,
            private_key=private_key,
            ledger_path=Path(os.getenv("TASKCUE_LEDGER_PATH", ".taskcue-ledger.db")),
            worker_name=os.getenv("WORKER_NAME", "taskcue-worker"),
            poll_interval=_milliseconds("POLLING_INTERVAL", 5000) / 1000.0,
            auto_withdraw_threshold=_optional_int("AUTO_WITHDRAW_THRESHOLD"),
            log_level=os.getenv("TASKCUE_LOG_LEVEL", "INFO").upper(),
        )
        if settings.is_local:
            return settings

        known = NETWORKS.get(name)
        if known is None:
            choices = ", ".join(sorted([*NETWORKS, LOCAL_NETWORK]))
            raise ConfigError(f"Unknown network {name!r}; choose one of: {choices}")

        address = os.getenv("REGISTRY_ADDRESS") or (deployment.address if deployment else None)
        if not address:
            raise ConfigError(
                f"Registry address not set: export REGISTRY_ADDRESS or provide {DEPLOYMENT_FILE}"
            )
        if not re.fullmatch(r"0x[0-9a-fA-F]{40}", address):
            raise ConfigError(f"Malformed registry address: {address}")

        settings.registry_address = address
        settings.chain_id = known.chain_id
        settings.provider_url = os.getenv(f"PROVIDER_URL_{name.upper()}", known.provider_url)
        return settings

    def build_registry(self) -> TaskRegistry:
        """Instantiate the registry this configuration points at."""
        if self.is_local:
            from taskcue.ledger import SqliteRegistry

            return SqliteRegistry(str(self.ledger_path))

        from taskcue.chain import Web3Registry

        return Web3Registry(
            self.provider_url,
            self.registry_address,
            self.private_key,
            chain_id=self.chain_id,
        )


def find_deployment(start: Path | None = None) -> Deployment | None:
    """Look for deployed-contract.json near ``start`` (cwd by default)."""
    base = start or Path.cwd()
    for directory in DEPLOYMENT_SEARCH_DIRS:
        path = (base / directory / DEPLOYMENT_FILE).resolve()
        if not path.is_file():
            continue
        try:
            raw = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigError(f"Unreadable deployment file {path}: {e}") from e
        if not isinstance(raw, dict) or not raw.get("address"):
            raise ConfigError(f"Deployment file {path} has no address")
        return Deployment(address=raw["address"], network=raw.get("network"), path=path)
    return None


def _require_private_key(value: str | None) -> str:
    if not value:
        raise ConfigError("PRIVATE_KEY environment variable is required")
    value = value.strip()
    if not value.startswith("0x"):
        value = "0x" + value
    if not _KEY_PATTERN.match(value):
        raise ConfigError("PRIVATE_KEY must be 0x followed by 64 hex characters")
    return value


def _milliseconds(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer number of milliseconds") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def _optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer") from None
