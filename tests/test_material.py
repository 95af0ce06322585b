import base64

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from keyrotator.errors import (
    EmptyInputError, MalformedKeyError, SerializationError, UnknownKeyTypeError,
)
from keyrotator.key import KeyType, Material, generate
from keyrotator.key.testing import material


def test_generate_p256():
    m = generate(KeyType.P256)
    assert m.key_type == KeyType.P256
    assert isinstance(m.public_key().curve, ec.SECP256R1)
    assert KeyType.P256.new() != m


def test_generate_unknown_type():
    with pytest.raises(UnknownKeyTypeError):
        generate(7)


def test_binary_layout_and_text_roundtrip():
    m = material("layout")
    b = m.to_binary()
    assert b[0] == 0x01
    assert len(b) == 1 + 33 + 32
    assert Material.from_binary(b) == m

    text = m.to_text()
    assert "=" not in text
    assert Material.from_text(text) == m


def test_testing_material_is_deterministic():
    assert material("a") == material("a")
    assert material("a") != material("b")
    assert hash(material("a")) == hash(material("a"))
    assert material(1).equal(material("1"))


@pytest.mark.parametrize("data,err", [
    (b"", EmptyInputError),
    (b"\x02" + b"\x00" * 65, UnknownKeyTypeError),
    (b"\x01" + b"\x00" * 10, MalformedKeyError),
    (b"\x01" + b"\x09" * 65, MalformedKeyError),
])
def test_from_binary_errors(data, err):
    with pytest.raises(err):
        Material.from_binary(data)


def test_serialization_errors_are_value_errors():
    with pytest.raises(ValueError):
        Material.from_binary(b"")


def test_from_binary_rejects_mismatched_public_point():
    a, b = material("a").to_binary(), material("b").to_binary()
    franken = a[:1] + b[1:34] + a[34:]
    with pytest.raises(MalformedKeyError):
        Material.from_binary(franken)


def test_from_text_rejects_bad_base64():
    with pytest.raises(SerializationError):
        Material.from_text("not base64!!")


def test_from_private_key_rejects_other_curves():
    with pytest.raises(MalformedKeyError):
        Material.from_private_key(ec.generate_private_key(ec.SECP384R1()))


def test_raw_rotation_format():
    m = material("raw")
    raw = base64.b64decode(m.as_raw_rotation_format())
    assert len(raw) == 65 + 32
    assert raw[0] == 0x04
    assert Material.from_raw_rotation_format(m.as_raw_rotation_format()) == m
    assert Material.from_raw_rotation_format(raw) == m


def test_raw_rotation_format_too_short():
    with pytest.raises(MalformedKeyError):
        Material.from_raw_rotation_format(b"\x04" + b"\x00" * 64)


def test_pkcs8_roundtrip():
    m = material("pkcs8")
    der = base64.b64decode(m.as_pkcs8())
    assert isinstance(serialization.load_der_private_key(der, password=None), ec.EllipticCurvePrivateKey)
    assert Material.from_pkcs8(m.as_pkcs8()) == m


def test_public_as_csr():
    m = material("csr")
    csr = x509.load_pem_x509_csr(m.public_as_csr("some.fqdn").encode("ascii"))
    assert csr.is_signature_valid
    assert csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "some.fqdn"
    assert csr.public_key().public_numbers() == m.public_key().public_numbers()


def test_public_as_pkix():
    m = material("pkix")
    pem = m.public_as_pkix()
    assert pem.startswith("-----BEGIN PUBLIC KEY-----")
    pub = serialization.load_pem_public_key(pem.encode("ascii"))
    assert pub.public_numbers() == m.public_key().public_numbers()


def test_repr_hides_private_material():
    m = material("repr")
    r = repr(m)
    assert r.startswith("Material(P256")
    assert m.to_text() not in r


def test_material_is_immutable():
    m = material("frozen")
    with pytest.raises(AttributeError):
        m._private_key = None
