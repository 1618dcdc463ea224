"""secp256k1 recoverable signatures, Keccak-256 and 0x-prefixed hex."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterator, Optional, Tuple

from Crypto.Hash import keccak

_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)
_HEX = re.compile(r"[0-9a-fA-F]*")

_Point = Optional[Tuple[int, int]]


class SigningError(ValueError):
    """Raised when a key, hash or signature is invalid."""


def keccak256(data: bytes) -> bytes:
    """Keccak-256 digest of ``data``."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def _point_add(a: _Point, b: _Point) -> _Point:
    if a is None:
        return b
    if b is None:
        return a
    (x1, y1), (x2, y2) = a, b
    if x1 == x2:
        if (y1 + y2) % _P == 0:
            return None
        slope = 3 * x1 * x1 * pow(2 * y1, -1, _P) % _P
    else:
        slope = (y2 - y1) * pow(x2 - x1, -1, _P) % _P
    x3 = (slope * slope - x1 - x2) % _P
    return x3, (slope * (x1 - x3) - y1) % _P


def _point_mul(k: int, point: _Point) -> _Point:
    result: _Point = None
    addend = point
    while k:
        if k & 1:
            result = _point_add(result, addend)
        addend = _point_add(addend, addend)
        k >>= 1
    return result


def _address_from_point(point: Tuple[int, int]) -> str:
    raw = point[0].to_bytes(32, "big") + point[1].to_bytes(32, "big")
    plain = keccak256(raw)[-20:].hex()
    checksum = keccak256(plain.encode("ascii")).hex()
    return "0x" + "".join(c.upper() if int(h, 16) >= 8 else c for c, h in zip(plain, checksum))


@dataclass(frozen=True)
class PrivateKey:
    """A secp256k1 private key."""

    scalar: int = field(repr=False)

    def __post_init__(self) -> None:
        if not 0 < self.scalar < CURVE_ORDER:
            raise SigningError("invalid private key, out of curve range")

    @cached_property
    def _public_point(self) -> Tuple[int, int]:
        point = _point_mul(self.scalar, _G)
        assert point is not None
        return point

    def address(self) -> str:
        """Checksummed account address of the matching public key."""
        return _address_from_point(self._public_point)


def private_key_from_hex(hex_key: str) -> PrivateKey:
    """Parse a 64-digit hex private key, optionally prefixed with ``0x``."""
    text = hex_key[2:] if hex_key.startswith("0x") else hex_key
    if len(text) != 64:
        raise SigningError("invalid private key length")
    if not _HEX.fullmatch(text):
        raise SigningError("invalid hex character in private key")
    return PrivateKey(int(text, 16))


def _nonces(scalar: int, digest: bytes) -> Iterator[int]:
    """Deterministic nonces in the manner of RFC 6979 with HMAC-SHA256."""
    x = scalar.to_bytes(32, "big")
    h1 = (int.from_bytes(digest, "big") % CURVE_ORDER).to_bytes(32, "big")
    v = b"\x01" * 32
    k = b"\x00" * 32
    k = hmac.new(k, v + b"\x00" + x + h1, hashlib.sha256).digest()
    v = hmac.new(k, v, hashlib.sha256).digest()
    k = hmac.new(k, v + b"\x01" + x + h1, hashlib.sha256).digest()
    v = hmac.new(k, v, hashlib.sha256).digest()
    while True:
        v = hmac.new(k, v, hashlib.sha256).digest()
        candidate = int.from_bytes(v, "big")
        if 0 < candidate < CURVE_ORDER:
            yield candidate
        k = hmac.new(k, v + b"\x00", hashlib.sha256).digest()
        v = hmac.new(k, v, hashlib.sha256).digest()


def sign_hash(digest: bytes, private_key: PrivateKey) -> bytes:
    """Sign a 32-byte digest; returns R || S || V with low S and V in 0..3."""
    if len(digest) != 32:
        raise SigningError(f"hash is required to be exactly 32 bytes ({len(digest)})")
    z = int.from_bytes(digest, "big")
    d = private_key.scalar
    for k in _nonces(d, digest):
        point = _point_mul(k, _G)
        assert point is not None
        rx, ry = point
        r = rx % CURVE_ORDER
        if r == 0:
            continue
        s = pow(k, -1, CURVE_ORDER) * (z + r * d) % CURVE_ORDER
        if s == 0:
            continue
        recovery_id = (ry & 1) | (2 if rx >= CURVE_ORDER else 0)
        if s > CURVE_ORDER // 2:
            s = CURVE_ORDER - s
            recovery_id ^= 1
        return r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([recovery_id])
    raise SigningError("no usable nonce")  # pragma: no cover


def recover_address(digest: bytes, signature: bytes) -> str:
    """Recover the checksummed signer address from a digest and a 65-byte signature."""
    if len(digest) != 32:
        raise SigningError(f"hash is required to be exactly 32 bytes ({len(digest)})")
    if len(signature) != 65:
        raise SigningError(f"invalid signature length: {len(signature)}, expected 65")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    recovery_id = signature[64]
    if recovery_id > 3:
        raise SigningError("invalid signature recovery id")
    if not (0 < r < CURVE_ORDER and 0 < s < CURVE_ORDER):
        raise SigningError("invalid signature values")
    x = r + (CURVE_ORDER if recovery_id & 2 else 0)
    if x >= _P:
        raise SigningError("invalid signature: point x out of range")
    y_squared = (pow(x, 3, _P) + 7) % _P
    y = pow(y_squared, (_P + 1) // 4, _P)
    if y * y % _P != y_squared:
        raise SigningError("invalid signature: point not on curve")
    if (y & 1) != (recovery_id & 1):
        y = _P - y
    r_inv = pow(r, -1, CURVE_ORDER)
    e = int.from_bytes(digest, "big") % CURVE_ORDER
    public = _point_add(
        _point_mul(s * r_inv % CURVE_ORDER, (x, y)),
        _point_mul(-e * r_inv % CURVE_ORDER, _G),
    )
    if public is None:
        raise SigningError("invalid signature: recovered point at infinity")
    return _address_from_point(public)


def encode_hex(data: bytes) -> str:
    """Encode bytes as ``0x``-prefixed lowercase hex."""
    return "0x" + bytes(data).hex()


def decode_hex(text: str) -> bytes:
    """Decode ``0x``-prefixed hex; raises ValueError on malformed input."""
    if not text:
        raise ValueError("empty hex string")
    if len(text) < 2 or text[0] != "0" or text[1] not in "xX":
        raise ValueError("hex string without 0x prefix")
    digits = text[2:]
    if len(digits) % 2:
        raise ValueError("hex string of odd length")
    if not _HEX.fullmatch(digits):
        raise ValueError("invalid hex string")
    return bytes.fromhex(digits)