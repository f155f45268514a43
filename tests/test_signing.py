import hashlib

import pytest

from spot_trader.errors import SigningError
from spot_trader.signing import NonceGenerator, OrderSigner, canonical_json, client_order_id, content_hash

TEST_KEY = "0x" + "4c" * 32


def test_canonical_json_is_sorted_and_compact():
    payload = {"size": "2", "token": "HYPE", "side": "buy"}
    assert canonical_json(payload) == b'{"side":"buy","size":"2","token":"HYPE"}'
    assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})


def test_content_hash_is_sha256_of_canonical_bytes():
    payload = {"token": "HYPE"}
    assert content_hash(payload) == hashlib.sha256(b'{"token":"HYPE"}').digest()


def test_nonces_strictly_increase():
    gen = NonceGenerator()
    nonces = [gen.next() for _ in range(1000)]
    assert all(b > a for a, b in zip(nonces, nonces[1:]))


def test_client_order_id_format():
    cloid = client_order_id(1_700_000_000_000)
    assert cloid.startswith("0x")
    assert len(cloid) == 34
    assert int(cloid, 16) == 1_700_000_000_000


def test_sign_and_recover_signer():
    signer = OrderSigner(TEST_KEY)
    signed = signer.sign({"token": "HYPE", "side": "buy", "size": "2", "price": "5"})

    assert signed.signer == signer.address
    assert signed.digest == "0x" + content_hash(signed.payload).hex()
    assert signed.signature.startswith("0x")
    assert len(signed.signature) == 2 + 65 * 2
    assert OrderSigner.recover_signer(signed) == signer.address


def test_request_body_carries_detached_signature():
    signer = OrderSigner(TEST_KEY)
    signed = signer.sign({"token": "HYPE", "nonce": 5})
    body = signed.to_request()
    assert body["order"] == {"token": "HYPE", "nonce": 5}
    assert body["nonce"] == 5
    assert body["signature"] == signed.signature
    assert body["signer"] == signer.address


def test_tampered_payload_recovers_different_signer():
    signer = OrderSigner(TEST_KEY)
    signed = signer.sign({"token": "HYPE", "size": "2"})
    forged = signer.sign({"token": "HYPE", "size": "200"})
    forged.signature = signed.signature
    assert OrderSigner.recover_signer(forged) != signer.address


@pytest.mark.parametrize("key", [None, "", "0x1234", "not-a-key"])
def test_missing_or_invalid_key_raises_signing_error(key):
    with pytest.raises(SigningError):
        OrderSigner(key)
