"""
keyrotator.key.material
-----------------------
Raw asymmetric key material (private + public portions) and its encodings.

Material is a tagged union over the supported key types. The tag byte leads
the binary serialization so a stored key can be decoded without knowing its
type up front; the tag space is therefore part of the wire format and must
not be renumbered.

Encodings:

- binary:  [tag][type-specific bytes]
- text:    unpadded standard base64 of the binary form
- CSR:     PEM PKCS#10 request over the public key, signed by the private key
- PKIX:    PEM SubjectPublicKeyInfo
- raw rotation format: base64 of the X9.62 uncompressed public point followed
  by the 32-byte private scalar, as consumed by the aggregation servers
- PKCS#8:  base64 of the DER PrivateKeyInfo
"""

from __future__ import annotations
from enum import IntEnum
from typing import Callable, Dict, NamedTuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ..errors import (
    EmptyInputError, GenerationFailure, MalformedKeyError, SerializationError, UnknownKeyTypeError,
)
from ..utils import b64d, b64e, raw_b64d, raw_b64e

P256_SCALAR_LEN = 32
P256_COMPRESSED_POINT_LEN = 33
P256_UNCOMPRESSED_POINT_LEN = 65


class KeyType(IntEnum):
    P256 = 1

    def new(self) -> "Material":
        """Create a new, randomly-initialized key of this type."""
        return generate(self)


class Material:
    """Immutable key material of one of the supported key types."""

    __slots__ = ("_key_type", "_private_key")

    def __init__(self, key_type: KeyType, private_key: ec.EllipticCurvePrivateKey):
        self._key_type = KeyType(key_type)
        self._private_key = private_key

    def __setattr__(self, name, value):
        if hasattr(self, name):
            raise AttributeError(f"{type(self).__name__} is immutable")
        object.__setattr__(self, name, value)

    # --------- construction ----------
    @classmethod
    def from_private_key(cls, private_key) -> "Material":
        """Wrap an existing `cryptography` private key, which must be P-256."""
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise MalformedKeyError(f"key was a {type(private_key).__name__} rather than an EC key")
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise MalformedKeyError(f"key was {private_key.curve.name} rather than P256")
        return cls(KeyType.P256, private_key)

    @classmethod
    def from_binary(cls, data: bytes) -> "Material":
        if not data:
            raise EmptyInputError("empty input")
        info = _TYPE_INFOS.get(data[0])
        if info is None:
            raise UnknownKeyTypeError(f"unknown key type {data[0]}")
        try:
            return info.parse(data[1:])
        except SerializationError as err:
            raise MalformedKeyError(f"couldn't unmarshal {info.name} key: {err}") from err

    @classmethod
    def from_text(cls, text: str) -> "Material":
        return cls.from_binary(raw_b64d(text))

    @classmethod
    def from_raw_rotation_format(cls, data) -> "Material":
        """Parse the uncompressed-point || scalar encoding (bytes or base64 str)."""
        if isinstance(data, str):
            data = b64d(data)
        if len(data) <= P256_UNCOMPRESSED_POINT_LEN:
            raise MalformedKeyError(f"raw P256 key too short ({len(data)} bytes)")
        return _p256_from_point_and_scalar(
            data[:P256_UNCOMPRESSED_POINT_LEN], data[P256_UNCOMPRESSED_POINT_LEN:])

    @classmethod
    def from_pkcs8(cls, data) -> "Material":
        """Parse a DER PKCS#8 private key (bytes or base64 str)."""
        if isinstance(data, str):
            data = b64d(data)
        try:
            private_key = serialization.load_der_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as err:
            raise MalformedKeyError(f"couldn't interpret key material as PKCS#8: {err}") from err
        return cls.from_private_key(private_key)

    # --------- identity ----------
    @property
    def key_type(self) -> KeyType:
        return self._key_type

    def equal(self, other: "Material") -> bool:
        if not isinstance(other, Material) or self._key_type != other._key_type:
            return False
        return _private_scalar(self._private_key) == _private_scalar(other._private_key)

    def __eq__(self, other):
        if not isinstance(other, Material):
            return NotImplemented
        return self.equal(other)

    def __hash__(self):
        return hash((self._key_type, _private_scalar(self._private_key)))

    def __repr__(self):
        # never include private material
        return f"Material({self._key_type.name}, public={self.public_fingerprint()})"

    # --------- serialization ----------
    def to_binary(self) -> bytes:
        return bytes([self._key_type]) + _TYPE_INFOS[self._key_type].serialize(self._private_key)

    def to_text(self) -> str:
        return raw_b64e(self.to_binary())

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    def public_fingerprint(self) -> str:
        point = self.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint)
        return point.hex()[:16]

    def public_as_csr(self, common_name: str) -> str:
        builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        try:
            csr = builder.sign(self._private_key, hashes.SHA256())
        except ValueError as err:
            raise SerializationError(f"couldn't create certificate request: {err}") from err
        return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def public_as_pkix(self) -> str:
        return self.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def as_raw_rotation_format(self) -> str:
        point = self.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint)
        return b64e(point + _private_scalar(self._private_key).to_bytes(P256_SCALAR_LEN, "big"))

    def as_pkcs8(self) -> str:
        der = self._private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return b64e(der)


def generate(key_type) -> Material:
    """Create new random key material of the given type."""
    try:
        info = _TYPE_INFOS[KeyType(key_type)]
    except ValueError as err:
        raise UnknownKeyTypeError(f"unknown key type {key_type}") from err
    try:
        private_key = info.new_random()
    except Exception as err:
        raise GenerationFailure(f"couldn't create {info.name} key: {err}") from err
    return Material(KeyType(key_type), private_key)


# --------- P-256 ----------
def _private_scalar(private_key) -> int:
    return private_key.private_numbers().private_value


def _new_random_p256():
    return ec.generate_private_key(ec.SECP256R1())


def _serialize_p256(private_key) -> bytes:
    # compressed public point, then the secret scalar
    point = private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint)
    return point + _private_scalar(private_key).to_bytes(P256_SCALAR_LEN, "big")


def _parse_p256(data: bytes) -> Material:
    if len(data) <= P256_COMPRESSED_POINT_LEN:
        raise MalformedKeyError(f"P256 key too short ({len(data)} bytes)")
    return _p256_from_point_and_scalar(data[:P256_COMPRESSED_POINT_LEN], data[P256_COMPRESSED_POINT_LEN:])


def _p256_from_point_and_scalar(point: bytes, scalar: bytes) -> Material:
    if len(scalar) > P256_SCALAR_LEN:
        raise MalformedKeyError(f"P256 scalar too long ({len(scalar)} bytes)")
    try:
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), point)
    except ValueError as err:
        raise MalformedKeyError(f"couldn't unmarshal public key: {err}") from err
    try:
        private_key = ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256R1())
    except ValueError as err:
        raise MalformedKeyError(f"invalid private scalar: {err}") from err
    if private_key.public_key().public_numbers() != public_key.public_numbers():
        raise MalformedKeyError("public point does not match private scalar")
    return Material(KeyType.P256, private_key)


class _TypeInfo(NamedTuple):
    name: str
    new_random: Callable[[], ec.EllipticCurvePrivateKey]
    serialize: Callable[[ec.EllipticCurvePrivateKey], bytes]
    parse: Callable[[bytes], Material]


_TYPE_INFOS: Dict[int, _TypeInfo] = {
    KeyType.P256: _TypeInfo("P256", _new_random_p256, _serialize_p256, _parse_p256),
}
