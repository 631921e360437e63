"""Compensation subsystem: escrow custody and caller identity.

The registry is custody-agnostic: settlement is a pluggable backend
behind the ValueCustody protocol.
"""

from freelancer.compensation.custody import (
    IdentityProvider,
    LocalHost,
    StaticIdentity,
    TransferError,
    TransferUnconfirmed,
    ValueCustody,
)
from freelancer.compensation.web3_custody import Web3Custody

__all__ = [
    "IdentityProvider",
    "LocalHost",
    "StaticIdentity",
    "TransferError",
    "TransferUnconfirmed",
    "ValueCustody",
    "Web3Custody",
]
