"""Custody and identity collaborators: who is calling, and with what value.

The registry never holds funds or authenticates callers itself. It
consumes two narrow interfaces supplied by the execution environment:

- IdentityProvider: the identity of the current caller.
- ValueCustody: the value attached to the current call (deposited as a
  job budget) and payouts from escrow to a worker.

LocalHost implements both for local use and tests. It keeps a balance
per identity plus an escrow balance, and gives calls revert semantics:
the attached value moves into escrow before the operation runs and is
refunded if the operation fails.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from freelancer.models.job import RegistryResult

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Raised when custody did not move the requested value."""


class TransferUnconfirmed(Exception):
    """Raised when value was sent but settlement is not yet confirmed.

    The transfer may still complete, so it must not be retried.
    ``reference`` identifies the pending transfer (e.g. a tx hash).
    """

    def __init__(self, reference: str, message: str) -> None:
        super().__init__(message)
        self.reference = reference


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the identity of the current caller."""

    def caller(self) -> str:
        ...


@runtime_checkable
class ValueCustody(Protocol):
    """Holds escrowed value and pays it out.

    transfer() either moves the full amount and returns an optional
    reference (e.g. a transaction hash), raises TransferError when
    nothing moved, or raises TransferUnconfirmed when value was sent
    but its settlement is unknown.
    """

    def transferred_value(self) -> Decimal:
        """Value attached to the current call."""
        ...

    def transfer(self, recipient: str, amount: Decimal) -> Optional[str]:
        ...


@dataclass(frozen=True)
class StaticIdentity:
    """Identity provider bound to a single caller (one CLI invocation)."""
    identity: str

    def caller(self) -> str:
        return self.identity


class LocalHost:
    """In-process execution environment: identity plus custody.

    Usage:
        host = LocalHost()
        host.fund("alice", Decimal("100"))
        registry = JobRegistry(identity=host, custody=host)
        result = host.invoke("alice", registry.create, "Logo", "SVG", role,
                             value=Decimal("40"))
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._balances: dict[str, Decimal] = {}
        self._escrow = Decimal("0")
        self._caller: Optional[str] = None
        self._attached = Decimal("0")
        self._transfer_count = 0
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # IdentityProvider / ValueCustody
    # ------------------------------------------------------------------

    def caller(self) -> str:
        if self._caller is None:
            raise RuntimeError("No active call: use LocalHost.invoke()")
        return self._caller

    def transferred_value(self) -> Decimal:
        return self._attached

    def transfer(self, recipient: str, amount: Decimal) -> Optional[str]:
        if amount < Decimal("0"):
            raise TransferError(f"Negative transfer amount: {amount}")
        if amount > self._escrow:
            raise TransferError(
                f"Escrow balance {self._escrow} cannot cover transfer of {amount}"
            )
        snapshot = (dict(self._balances), self._escrow, self._transfer_count)
        self._escrow -= amount
        self._balances[recipient] = self._balances.get(recipient, Decimal("0")) + amount
        self._transfer_count += 1
        try:
            self._save()
        except OSError as e:
            self._balances, self._escrow, self._transfer_count = snapshot
            raise TransferError(f"Transfer to {recipient} not recorded: {e}") from e
        logger.info("Released %s from escrow to %s", amount, recipient)
        return f"local-{self._transfer_count}"

    # ------------------------------------------------------------------
    # Host operations
    # ------------------------------------------------------------------

    def fund(self, identity: str, amount: Decimal) -> Decimal:
        """Credit an identity from outside the system. Returns new balance."""
        if amount <= Decimal("0"):
            raise ValueError("Funding amount must be positive")
        previous = self._balances.get(identity, Decimal("0"))
        self._balances[identity] = previous + amount
        try:
            self._save()
        except OSError:
            self._balances[identity] = previous
            raise
        return previous + amount

    def balance(self, identity: str) -> Decimal:
        return self._balances.get(identity, Decimal("0"))

    @property
    def escrow_balance(self) -> Decimal:
        return self._escrow

    def invoke(
        self,
        caller: str,
        operation: Callable[..., RegistryResult],
        *args: Any,
        value: Decimal = Decimal("0"),
        **kwargs: Any,
    ) -> RegistryResult:
        """Run a registry operation as ``caller`` with ``value`` attached.

        The value is debited from the caller into escrow, and the debit
        persisted, before the operation runs. A failed result (or an
        exception) refunds it.

        Raises TransferError if the caller cannot cover the value or the
        deposit cannot be recorded; the operation does not run.
        """
        if self._caller is not None:
            raise RuntimeError(f"Nested call while {self._caller} is active")
        value = Decimal(value)
        if value < Decimal("0"):
            raise ValueError("Attached value must be non-negative")
        available = self._balances.get(caller, Decimal("0"))
        if value > available:
            raise TransferError(
                f"{caller} has {available}, cannot attach {value}"
            )

        if value:
            self._balances[caller] = available - value
            self._escrow += value
            try:
                self._save()
            except OSError as e:
                self._balances[caller] = available
                self._escrow -= value
                raise TransferError(f"Deposit from {caller} not recorded: {e}") from e

        self._caller = caller
        self._attached = value
        try:
            result = operation(*args, **kwargs)
        except Exception:
            self._refund(caller, value)
            raise
        finally:
            self._caller = None
            self._attached = Decimal("0")

        if not result.success:
            self._refund(caller, value)
        return result

    def _refund(self, caller: str, value: Decimal) -> None:
        if not value:
            return
        self._escrow -= value
        self._balances[caller] = self._balances.get(caller, Decimal("0")) + value
        try:
            self._save()
        except OSError as e:
            # Disk still shows the deposit in escrow; nothing is lost.
            logger.warning("Refund of %s to %s not persisted: %s", value, caller, e)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._storage_path is None:
            return
        document = {
            "balances": {k: str(v) for k, v in sorted(self._balances.items())},
            "escrow": str(self._escrow),
            "transfer_count": self._transfer_count,
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(document, indent=2, sort_keys=True), encoding="utf-8",
        )
        os.replace(tmp_path, self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        document = json.loads(path.read_text(encoding="utf-8"))
        self._balances = {
            k: Decimal(v) for k, v in document.get("balances", {}).items()
        }
        self._escrow = Decimal(document.get("escrow", "0"))
        self._transfer_count = int(document.get("transfer_count", 0))
