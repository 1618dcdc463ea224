import pytest

from chronomesh.signing import (
    CURVE_ORDER,
    PrivateKey,
    SigningError,
    decode_hex,
    encode_hex,
    keccak256,
    private_key_from_hex,
    recover_address,
    sign_hash,
)


def test_keccak256_of_empty_input():
    assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def test_address_of_scalar_one_is_checksummed():
    assert PrivateKey(1).address() == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"


def test_private_key_from_hex_with_and_without_prefix():
    scalar_hex = format(12345, "064x")
    plain = private_key_from_hex(scalar_hex)
    prefixed = private_key_from_hex("0x" + scalar_hex)
    assert plain == prefixed
    assert plain.scalar == 12345


@pytest.mark.parametrize(
    "text",
    [format(5, "062x"), format(5, "066x"), "zz" + format(5, "062x"), format(0, "064x"), format(CURVE_ORDER, "064x")],
)
def test_private_key_from_hex_rejects_bad_input(text):
    with pytest.raises(SigningError):
        private_key_from_hex(text)


def test_private_key_scalar_range():
    with pytest.raises(SigningError):
        PrivateKey(0)
    with pytest.raises(SigningError):
        PrivateKey(CURVE_ORDER)


@pytest.mark.parametrize("scalar", [1, 2, 0xC0FFEE, CURVE_ORDER - 1])
def test_sign_and_recover_round_trip(scalar):
    key = PrivateKey(scalar)
    digest = keccak256(b"message %d" % scalar)
    signature = sign_hash(digest, key)
    assert len(signature) == 65
    assert signature[64] in (0, 1, 2, 3)
    assert recover_address(digest, signature) == key.address()


def test_signatures_have_low_s():
    key = PrivateKey(0xABCDEF)
    for i in range(8):
        signature = sign_hash(keccak256(bytes([i])), key)
        assert int.from_bytes(signature[32:64], "big") <= CURVE_ORDER // 2


def test_signing_is_deterministic():
    key = PrivateKey(77)
    digest = keccak256(b"same")
    first = sign_hash(digest, key)
    second = sign_hash(digest, key)
    assert first == second
    assert len(first) == 65
    assert recover_address(digest, first) == key.address()
    assert first != sign_hash(keccak256(b"different"), key)


def test_recover_with_other_digest_gives_other_address():
    key = PrivateKey(99)
    signature = sign_hash(keccak256(b"one"), key)
    assert recover_address(keccak256(b"two"), signature) != key.address()


def test_sign_hash_requires_32_bytes():
    with pytest.raises(SigningError):
        sign_hash(b"short", PrivateKey(1))


def test_recover_rejects_bad_signatures():
    digest = keccak256(b"x")
    signature = sign_hash(digest, PrivateKey(3))
    with pytest.raises(SigningError):
        recover_address(digest, signature[:64])
    with pytest.raises(SigningError):
        recover_address(digest, signature[:64] + bytes([27]))
    with pytest.raises(SigningError):
        recover_address(digest, bytes(64) + bytes([0]))


def test_encode_hex():
    assert encode_hex(b"\x01\xab") == "0x01ab"


def test_hex_round_trip():
    data = bytes(range(0, 256, 7))
    assert decode_hex(encode_hex(data)) == data
    assert decode_hex("0X" + data.hex().upper()) == data
    assert decode_hex("0x") == b""


@pytest.mark.parametrize("text", ["", "00ff", "0xabc", "0xgg", "0x 1"])
def test_decode_hex_rejects_malformed(text):
    with pytest.raises(ValueError):
        decode_hex(text)