"""Deterministic key material for tests. Not secure; never use outside tests."""

from __future__ import annotations
import hashlib

from cryptography.hazmat.primitives.asymmetric import ec

from .material import Material

# order of the P-256 base point
_P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


def material(kid) -> Material:
    """Key material derived from `kid`; different kids give different keys."""
    seed = int.from_bytes(hashlib.sha256(str(kid).encode("utf-8")).digest(), "big")
    private_value = seed % (_P256_ORDER - 1) + 1
    return Material.from_private_key(ec.derive_private_key(private_value, ec.SECP256R1()))


def material_factory(kid):
    """A RotationConfig.create_key callable that always returns material(kid)."""
    def create_key() -> Material:
        return material(kid)
    return create_key
