"""Registry configuration: data location, custody backend, chain settings.

Loaded from FREELANCER_* environment variables (optionally from a .env
file via python-dotenv) or from a JSON file with the same keys in lower
case:

    FREELANCER_DATA_DIR        data directory (default: ./data)
    FREELANCER_CUSTODY         "local" or "web3" (default: local)
    FREELANCER_RPC_URL         EVM RPC endpoint (web3 custody)
    FREELANCER_PRIVATE_KEY     escrow account key (web3 custody)
    FREELANCER_CHAIN_ID        default 11155111 (Sepolia)
    FREELANCER_GAS             default 21000
    FREELANCER_GAS_PRICE_GWEI  default "2"
    FREELANCER_LOG_LEVEL       default WARNING
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

CUSTODY_BACKENDS = ("local", "web3")

_ENV_PREFIX = "FREELANCER_"


@dataclass(frozen=True)
class RegistryConfig:
    """Runtime configuration for the registry and its collaborators."""

    data_dir: Path = Path("data")
    custody: str = "local"
    rpc_url: Optional[str] = None
    private_key: Optional[str] = None
    chain_id: int = 11155111
    gas: int = 21_000
    gas_price_gwei: str = "2"
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.custody not in CUSTODY_BACKENDS:
            raise ValueError(
                f"Unknown custody backend: {self.custody} "
                f"(expected one of {', '.join(CUSTODY_BACKENDS)})"
            )
        if self.custody == "web3" and (not self.rpc_url or not self.private_key):
            raise ValueError("web3 custody requires rpc_url and private_key")

    @property
    def jobs_path(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def events_path(self) -> Path:
        return self.data_dir / "events.jsonl"

    @property
    def balances_path(self) -> Path:
        return self.data_dir / "balances.json"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> RegistryConfig:
        """Load from FREELANCER_* variables, after reading ``env_file``.

        Variables already set in the process environment take
        precedence over the .env file.
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()
        values = {
            key[len(_ENV_PREFIX):].lower(): value
            for key, value in os.environ.items()
            if key.startswith(_ENV_PREFIX)
        }
        return cls._from_mapping(values)

    @classmethod
    def from_json(cls, path: Path) -> RegistryConfig:
        """Load from a JSON object with lower-case keys."""
        return cls._from_mapping(json.loads(path.read_text(encoding="utf-8")))

    @classmethod
    def _from_mapping(cls, values: Mapping[str, Any]) -> RegistryConfig:
        defaults = cls()
        return cls(
            data_dir=Path(values.get("data_dir", defaults.data_dir)),
            custody=str(values.get("custody", defaults.custody)).lower(),
            rpc_url=values.get("rpc_url") or None,
            private_key=values.get("private_key") or None,
            chain_id=int(values.get("chain_id", defaults.chain_id)),
            gas=int(values.get("gas", defaults.gas)),
            gas_price_gwei=str(values.get("gas_price_gwei", defaults.gas_price_gwei)),
            log_level=str(values.get("log_level", defaults.log_level)).upper(),
        )
