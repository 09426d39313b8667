from cryptography.hazmat.primitives.asymmetric import ec

from ucp_core.signing import (
    DetachedSigner,
    KeyRegistry,
    generate_private_key,
    jcs_canonicalize,
    load_private_key,
    private_key_to_pem,
    verify_detached,
)

PAYLOAD = {"order": {"id": "order_1", "total": 4500}, "event_type": "order.created"}


def test_jcs_sorts_keys_and_strips_whitespace():
    assert jcs_canonicalize({"b": 1, "a": [1, {"d": 2, "c": "é"}]}) == '{"a":[1,{"c":"é","d":2}],"b":1}'.encode("utf-8")


def test_signature_round_trip():
    signer = DetachedSigner(generate_private_key(), kid="k1")
    signature = signer.sign(PAYLOAD)

    assert ".." in signature
    # key order does not matter after canonicalization
    reordered = {"event_type": "order.created", "order": {"total": 4500, "id": "order_1"}}
    assert verify_detached(signature, reordered, signer.public_key) == (True, None)


def test_tampered_payload_fails():
    signer = DetachedSigner(generate_private_key())
    signature = signer.sign(PAYLOAD)

    is_valid, error = verify_detached(signature, {**PAYLOAD, "event_type": "order.shipped"}, signer.public_key)
    assert not is_valid
    assert error == "Signature does not verify"


def test_malformed_signatures_fail():
    key = generate_private_key().public_key()
    assert verify_detached("not-a-jws", PAYLOAD, key)[0] is False
    assert verify_detached("", PAYLOAD, key)[0] is False
    assert verify_detached("e30..AAAA", PAYLOAD, key)[0] is False


def test_curve_mismatch_fails():
    signer = DetachedSigner(ec.generate_private_key(ec.SECP384R1()))
    signature = signer.sign(PAYLOAD)

    is_valid, error = verify_detached(signature, PAYLOAD, generate_private_key().public_key())
    assert not is_valid
    assert "does not match" in error


def test_public_jwk():
    signer = DetachedSigner(generate_private_key(), kid="business_key_1")
    jwk = signer.public_jwk()
    assert (jwk.kid, jwk.kty, jwk.crv, jwk.alg) == ("business_key_1", "EC", "P-256", "ES256")


def test_private_key_pem_round_trip(tmp_path):
    key = generate_private_key()
    path = tmp_path / "key.pem"
    path.write_bytes(private_key_to_pem(key))

    loaded = load_private_key(str(path))
    assert loaded.public_key().public_numbers() == key.public_key().public_numbers()


def test_key_registry():
    registry = KeyRegistry()
    key = generate_private_key().public_key()
    registry.register("merchant_1", key)

    assert "merchant_1" in registry
    assert registry.get("merchant_1") is key
    assert registry.get("merchant_2") is None
