"""Address validation and EIP-55 checksumming for reward recipients."""

import re

from web3 import Web3

ADDRESS_HEX_RE = re.compile(r"^[0-9a-f]{40}$")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class InvalidAddressError(ValueError):
    pass


def checksum(address_lower_hex: str) -> str:
    """Mixed-case encode 40 lowercase hex chars (no 0x prefix).

    Each letter is uppercased when the matching nibble of keccak256(address)
    is >= 8.
    """
    digest = bytes(Web3.keccak(text=address_lower_hex)).hex()
    out = []
    for ch, nibble in zip(address_lower_hex, digest):
        if ch.isalpha() and int(nibble, 16) >= 8:
            out.append(ch.upper())
        else:
            out.append(ch)
    return "0x" + "".join(out)


def normalize_address(address: str) -> str:
    """Lowercase, strip an optional 0x prefix and check for 20 bytes of hex."""
    s = str(address).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not ADDRESS_HEX_RE.match(s):
        raise InvalidAddressError(f"Invalid address format: {address}")
    return s


def to_checksum_address(address: str) -> str:
    return checksum(normalize_address(address))
