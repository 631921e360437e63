"""Ethereum custody: escrowed budgets held by an externally owned account.

Job budgets are deposited into a single escrow account. Approval pays
the worker with a native-value transaction signed by that account and
confirmed on chain. The worker identity must therefore be an address.

web3 and eth-account are imported lazily so that the rest of the
package works without a node connection.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from freelancer.compensation.custody import TransferError, TransferUnconfirmed

logger = logging.getLogger(__name__)


class Web3Custody:
    """Escrow account on an EVM chain implementing ValueCustody.

    The host declares the value attached to the current call with
    attach(); on a real deployment this is the amount the poster sent
    to the escrow address in the funding transaction.

    Usage:
        custody = Web3Custody(rpc_url, private_key)
        custody.attach(Decimal("0.05"))
        registry = JobRegistry(identity=StaticIdentity(addr), custody=custody)
        registry.create("Audit", "Review the contract", role)
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int = 11155111,  # Sepolia
        gas: int = 21_000,
        gas_price_gwei: str = "2",
        receipt_timeout: int = 300,
        web3: Optional[Any] = None,
        account: Optional[Any] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._chain_id = chain_id
        self._gas = gas
        self._gas_price_gwei = gas_price_gwei
        self._receipt_timeout = receipt_timeout
        self._w3 = web3
        self._account = account
        self._attached = Decimal("0")

    def _connect(self) -> tuple[Any, Any]:
        if self._w3 is None:
            from web3 import Web3, HTTPProvider
            self._w3 = Web3(HTTPProvider(self._rpc_url))
        if self._account is None:
            from eth_account import Account
            self._account = Account.from_key(self._private_key)
        return self._w3, self._account

    @property
    def escrow_address(self) -> str:
        _, acct = self._connect()
        return acct.address

    def attach(self, value: Decimal) -> None:
        """Declare the value (in ether) attached to the current call."""
        value = Decimal(value)
        if value < Decimal("0"):
            raise ValueError("Attached value must be non-negative")
        self._attached = value

    def transferred_value(self) -> Decimal:
        return self._attached

    def transfer(self, recipient: str, amount: Decimal) -> Optional[str]:
        """Send ``amount`` ether from escrow to ``recipient``.

        Raises TransferError if nothing was sent (connection, signing or
        submission failed) or the receipt reports a revert. Once the
        transaction is submitted, a missing receipt raises
        TransferUnconfirmed carrying the tx hash: the payment may still
        be mined.
        """
        try:
            w3, acct = self._connect()
            nonce = w3.eth.get_transaction_count(acct.address)
            tx = {
                "to": w3.to_checksum_address(recipient),
                "value": w3.to_wei(amount, "ether"),
                "gas": self._gas,
                "gasPrice": w3.to_wei(self._gas_price_gwei, "gwei"),
                "nonce": nonce,
                "chainId": self._chain_id,
            }
            signed = acct.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise TransferError(f"Transfer to {recipient} failed: {e}") from e

        reference = w3.to_hex(tx_hash)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout,
            )
        except Exception as e:
            raise TransferUnconfirmed(
                reference,
                f"Transfer to {recipient} sent in tx {reference} but not confirmed: {e}",
            ) from e

        if receipt["status"] != 1:
            raise TransferError(f"Transfer to {recipient} reverted in tx {reference}")
        logger.info(
            "Released %s ether to %s in block %s",
            amount, recipient, receipt["blockNumber"],
        )
        return reference
