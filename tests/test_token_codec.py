import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from shared.utils.errors import TokenDecodeError, TokenExpiredError
from services.ticket_validation.services.token_codec import TOKEN_VERSION, TokenCodec


def _payload(codec, **overrides):
    values = dict(
        ticket_id="tkt-1",
        ticket_number="EVTR-1-AAAAAA",
        ticket_type="vip",
        event_id="evt-1",
        booking_id="BK-1",
    )
    values.update(overrides)
    return codec.new_payload(**values)


def test_encode_decode(codec):
    payload = _payload(codec)
    token = codec.encode(payload)

    assert token.startswith(f"{TOKEN_VERSION}.")
    decoded = codec.decode(token)
    assert decoded == payload
    assert decoded.tno == "EVTR-1-AAAAAA"
    assert decoded.v == 2


def test_two_encodes_never_produce_the_same_token(codec):
    first = codec.encode(_payload(codec))
    second = codec.encode(_payload(codec))
    assert first != second
    # Mismo payload, distinto nonce AES-GCM
    payload = _payload(codec)
    assert codec.encode(payload) != codec.encode(payload)


def test_payload_contents_are_not_readable_in_the_token(codec):
    token = codec.encode(_payload(codec))
    assert "EVTR-1-AAAAAA" not in token
    body = token.split(".")[1]
    raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    assert b"EVTR-1-AAAAAA" not in raw


def test_truncated_token_is_invalid(codec):
    token = codec.encode(_payload(codec))
    for cut in (1, 5, len(token) // 2, len(token) - 1):
        with pytest.raises(TokenDecodeError):
            codec.decode(token[:cut])


def test_reordered_segments_are_invalid(codec):
    version, body, mac = codec.encode(_payload(codec)).split(".")
    with pytest.raises(TokenDecodeError):
        codec.decode(f"{version}.{mac}.{body}")
    with pytest.raises(TokenDecodeError):
        codec.decode(f"{body}.{version}.{mac}")


def test_unknown_version_tag_is_invalid(codec):
    _, body, mac = codec.encode(_payload(codec)).split(".")
    with pytest.raises(TokenDecodeError):
        codec.decode(f"EVTKT1.{body}.{mac}")
    with pytest.raises(TokenDecodeError):
        codec.decode(f"EVTKT3.{body}.{mac}")


def test_single_character_mutation_is_invalid(codec):
    token = codec.encode(_payload(codec))
    prefix = len(TOKEN_VERSION) + 1
    for i in range(prefix, len(token), 7):
        if token[i] == ".":
            continue
        replacement = "A" if token[i] != "A" else "B"
        mutated = token[:i] + replacement + token[i + 1:]
        with pytest.raises(TokenDecodeError):
            codec.decode(mutated)


def test_token_from_another_secret_is_invalid(codec):
    other = TokenCodec("another-secret")
    with pytest.raises(TokenDecodeError):
        codec.decode(other.encode(_payload(other)))


def test_garbage_is_invalid(codec):
    for garbage in ("", "   ", "EVTKT2", "EVTKT2..", "a.b.c", "EVTKT2.!!!.???", None, 42):
        with pytest.raises(TokenDecodeError):
            codec.decode(garbage)


def test_legacy_plain_json_qr_is_invalid(codec):
    legacy = json.dumps({"ticketId": "tkt-1", "eventId": "evt-1"})
    with pytest.raises(TokenDecodeError):
        codec.decode(legacy)


def test_expired_token(codec):
    issued = datetime.now(timezone.utc) - timedelta(days=10)
    payload = _payload(codec, event_date=issued + timedelta(days=1), issued_at=issued)
    token = codec.encode(payload)

    with pytest.raises(TokenExpiredError) as exc_info:
        codec.decode(token)
    assert exc_info.value.expired_at is not None
    # Antes del vencimiento el mismo token es válido
    assert codec.decode(token, now=issued + timedelta(hours=1)) == payload


def test_expiry_is_event_date_plus_grace(codec):
    event_date = datetime(2026, 12, 31, 21, 0, tzinfo=timezone.utc)
    payload = _payload(codec, event_date=event_date)
    assert payload.exp == int((event_date + timedelta(hours=24)).timestamp())
