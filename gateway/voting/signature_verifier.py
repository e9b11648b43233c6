"""
ARCHUNT :: Wallet signature verification
========================================
Recovers the signer of an EIP-191 personal message ("\\x19Ethereum Signed
Message:\\n" + len + text) and compares it with the claimed wallet.

Verification is pure CPU work and fails closed: anything that is not a
well-formed 65-byte (r, s, v) signature recovering to the claimed address
is rejected.
"""

from __future__ import annotations

import logging
import re

from eth_account import Account
from eth_account.messages import encode_defunct

from voting.errors import InvalidSignature

logger = logging.getLogger("archunt.auth")

SECP256K1_N      = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

_SIGNATURE_RE = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")
_ADDRESS_RE   = re.compile(r"^0x[0-9a-fA-F]{40}$")
_VALID_V      = (0, 1, 27, 28)


def _decode_signature(signature: str) -> bytes:
    if not isinstance(signature, str) or not _SIGNATURE_RE.match(signature):
        raise ValueError("signature must be 65 bytes of hex")
    sig = bytes.fromhex(signature.strip().removeprefix("0x"))

    s = int.from_bytes(sig[32:64], "big")
    v = sig[64]
    # EIP-2: reject high-s so a signature has exactly one valid encoding
    if s == 0 or s > SECP256K1_HALF_N:
        raise ValueError("signature s value out of range")
    # eth_account would also read v >= 35 as EIP-155 chain-encoded
    if v not in _VALID_V:
        raise ValueError(f"unsupported recovery id v={v}")
    return sig


class SignatureVerifier:
    """Stateless: a single instance can be shared by all request handlers."""

    def recover(self, message: str, signature: str) -> str:
        sig = _decode_signature(signature)
        return Account.recover_message(encode_defunct(text=message), signature=sig)

    def verify(self, address: str, message: str, signature: str) -> bool:
        if not isinstance(address, str) or not _ADDRESS_RE.match(address):
            return False
        if not isinstance(message, str) or not message:
            return False
        try:
            recovered = self.recover(message, signature)
        except Exception as e:
            logger.debug(f"Signature recovery failed: {e}")
            return False
        return recovered.lower() == address.lower()

    def verify_or_raise(self, address: str, message: str, signature: str) -> None:
        if not self.verify(address, message, signature):
            raise InvalidSignature()
