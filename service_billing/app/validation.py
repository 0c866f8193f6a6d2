"""
Input validation for wallet pairs.

Checks run before any store lookup; failures come back as ``Invalid``
results rather than exceptions.
"""

import re
from typing import Optional, Tuple, Union

from .models import Invalid


WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
CHAIN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def normalize_wallet_address(wallet_address: Optional[str]) -> Union[str, Invalid]:
    """Return the lower-cased address, or Invalid."""
    if not wallet_address:
        return Invalid(field="wallet_address", reason="Wallet address is required")

    candidate = wallet_address.strip()
    if not WALLET_ADDRESS_PATTERN.match(candidate):
        return Invalid(
            field="wallet_address",
            reason="Wallet address must be 0x followed by 40 hex characters"
        )

    return candidate.lower()


def normalize_chain_id(chain_id: Optional[str]) -> Union[str, Invalid]:
    """Return the trimmed, lower-cased chain id, or Invalid."""
    if not chain_id or not chain_id.strip():
        return Invalid(field="chain_id", reason="Chain id is required")

    candidate = chain_id.strip()
    if not CHAIN_ID_PATTERN.match(candidate):
        return Invalid(
            field="chain_id",
            reason="Chain id must be at most 64 characters of letters, digits, '_', '.', ':' or '-'"
        )

    return candidate.lower()


def validate_wallet_pair(wallet_address: Optional[str],
                         chain_id: Optional[str]) -> Union[Tuple[str, str], Invalid]:
    """Validate and normalise a (wallet address, chain id) pair.

    The address is checked first so a pair with two bad fields reports the
    address.
    """
    address = normalize_wallet_address(wallet_address)
    if isinstance(address, Invalid):
        return address

    chain = normalize_chain_id(chain_id)
    if isinstance(chain, Invalid):
        return chain

    return address, chain
