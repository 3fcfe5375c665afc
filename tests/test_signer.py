from shared.utils import signer

SECRET = "unit-secret"


def test_canonicalize_sorts_keys_and_renders_none_as_empty():
    canonical = signer.canonicalize({"b": "2", "a": "1", "c": None})
    assert canonical == b"a=1&b=2&c="


def test_canonicalize_escapes_delimiters():
    """Un '&' o '=' dentro de un valor no puede fabricar otro campo"""
    crafted = signer.canonicalize({"a": "1&b=2"})
    honest = signer.canonicalize({"a": "1", "b": "2"})
    assert crafted != honest


def test_sign_then_verify():
    canonical = signer.canonicalize({"order_id": "ORD-1", "amount": "150.00"})
    signature = signer.sign(canonical, SECRET)
    assert len(signature) == 64
    assert signer.verify(canonical, signature, SECRET)
    # Verificar de nuevo da el mismo resultado
    assert signer.verify(canonical, signature, SECRET)


def test_single_byte_mutation_of_message_fails():
    canonical = signer.canonicalize({"order_id": "ORD-1", "amount": "150.00"})
    signature = signer.sign(canonical, SECRET)
    for i in range(len(canonical)):
        mutated = bytearray(canonical)
        mutated[i] ^= 0x01
        assert not signer.verify(bytes(mutated), signature, SECRET)


def test_single_character_mutation_of_signature_fails():
    canonical = signer.canonicalize({"order_id": "ORD-1"})
    signature = signer.sign(canonical, SECRET)
    for i in range(len(signature)):
        replacement = "0" if signature[i] != "0" else "1"
        mutated = signature[:i] + replacement + signature[i + 1:]
        assert not signer.verify(canonical, mutated, SECRET)


def test_uppercase_signature_is_not_accepted():
    canonical = signer.canonicalize({"order_id": "ORD-1"})
    signature = signer.sign(canonical, SECRET)
    assert any(c in "abcdef" for c in signature)
    assert not signer.verify(canonical, signature.upper(), SECRET)


def test_verify_returns_false_for_malformed_input():
    canonical = signer.canonicalize({"order_id": "ORD-1"})
    assert not signer.verify(canonical, None, SECRET)
    assert not signer.verify(canonical, 12345, SECRET)
    assert not signer.verify(canonical, "", SECRET)
    assert not signer.verify(canonical, "zz" * 32, SECRET)
    assert not signer.verify("not-bytes", signer.sign(canonical, SECRET), SECRET)


def test_wrong_secret_fails():
    canonical = signer.canonicalize({"order_id": "ORD-1"})
    assert not signer.verify(canonical, signer.sign(canonical, SECRET), "other-secret")


def test_fingerprint_is_stable_and_field_sensitive():
    a = signer.fingerprint({"order_id": "ORD-1", "signature": "abc"})
    assert a == signer.fingerprint({"signature": "abc", "order_id": "ORD-1"})
    assert a != signer.fingerprint({"order_id": "ORD-2", "signature": "abc"})


def test_non_ascii_signature_is_rejected_without_error():
    canonical = signer.canonicalize({"order_id": "ORD-1"})
    assert signer.verify(canonical, "\ud800", "secret") is False
    assert signer.verify(canonical, "é" * 64, "secret") is False
