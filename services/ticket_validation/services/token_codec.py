"""
Codec de tokens QR de tickets

Formato: EVTKT2.<base64url(nonce || ciphertext || tag)>.<base64url(hmac)>

- El payload se serializa como JSON canónico y se cifra con AES-GCM
  (el tag de versión va como associated data).
- El HMAC-SHA256 cubre "<version>.<body>" exactamente como viaja en el QR.
- Las llaves de cifrado y firma se derivan de QR_SECRET con HKDF.
"""
import base64
import json
import logging
import os
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Type

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, ValidationError

from app.core.config import settings
from services.ticket_validation.models.ticket import TicketTokenPayload, TicketTokenPayloadV2
from shared.utils import signer
from shared.utils.errors import TokenDecodeError, TokenExpiredError

logger = logging.getLogger(__name__)

TOKEN_VERSION = "EVTKT2"

# Versiones soportadas -> modelo del payload
PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    "EVTKT2": TicketTokenPayloadV2,
}

_AEAD_NONCE_BYTES = 12
_AEAD_TAG_BYTES = 16
_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _derive_key(secret: str, info: bytes) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(secret.encode("utf-8"))


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    """Decodificar base64url sin padding, rechazando cualquier forma no canónica"""
    if not _B64URL_RE.match(segment):
        raise TokenDecodeError("Segmento base64 inválido")
    padding = "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(segment + padding)
    except ValueError as e:
        raise TokenDecodeError("Segmento base64 inválido") from e
    # Bits sobrantes del último carácter: dos strings distintos no pueden ser el mismo token
    if _b64encode(raw) != segment:
        raise TokenDecodeError("Segmento base64 no canónico")
    return raw


def _epoch(value: Optional[datetime]) -> int:
    if value is None:
        value = datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def token_expiry(event_date: Optional[datetime], issued_at: Optional[datetime]) -> int:
    """
    Vencimiento (epoch) de un ticket

    Fecha del evento + TOKEN_GRACE_HOURS si se conoce la fecha,
    si no, emisión + TOKEN_VALIDITY_HOURS.
    """
    if event_date is not None:
        return _epoch(event_date + timedelta(hours=settings.TOKEN_GRACE_HOURS))
    return _epoch(issued_at) + settings.TOKEN_VALIDITY_HOURS * 3600


class TokenCodec:
    """Encode/decode de tokens QR (cifrados y firmados)"""

    def __init__(self, secret: Optional[str] = None):
        secret = secret or settings.QR_SECRET
        self._mac_key = _derive_key(secret, b"evtkt/mac")
        self._aead = AESGCM(_derive_key(secret, b"evtkt/enc"))

    def new_payload(
        self,
        ticket_id: str,
        ticket_number: str,
        ticket_type: str,
        event_id: str,
        booking_id: str,
        event_date: Optional[datetime] = None,
        issued_at: Optional[datetime] = None
    ) -> TicketTokenPayload:
        """Construir el payload de un ticket con un nonce nuevo (vigencia según token_expiry)"""
        iat = _epoch(issued_at)
        exp = token_expiry(event_date, datetime.fromtimestamp(iat, tz=timezone.utc))

        return TicketTokenPayloadV2(
            tid=ticket_id,
            tno=ticket_number,
            typ=ticket_type,
            eid=event_id,
            bid=booking_id,
            iat=iat,
            exp=exp,
            nonce=secrets.token_hex(16),
        )

    def encode(self, payload: TicketTokenPayload) -> str:
        """Cifrar y firmar un payload; cada llamada usa un nonce AES-GCM nuevo"""
        plaintext = json.dumps(
            payload.model_dump(), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        aead_nonce = os.urandom(_AEAD_NONCE_BYTES)
        ciphertext = self._aead.encrypt(aead_nonce, plaintext, TOKEN_VERSION.encode("ascii"))

        body = _b64encode(aead_nonce + ciphertext)
        signed_part = f"{TOKEN_VERSION}.{body}"
        mac = signer.sign_bytes(signed_part.encode("ascii"), self._mac_key)
        return f"{signed_part}.{_b64encode(mac)}"

    def decode(self, token: str, now: Optional[datetime] = None) -> TicketTokenPayload:
        """
        Verificar y descifrar un token. No tiene efectos secundarios.

        Raises:
            TokenDecodeError: estructura, versión, firma, cifrado o esquema inválido
            TokenExpiredError: token auténtico pero vencido
        """
        if not isinstance(token, str):
            raise TokenDecodeError("Token vacío o de tipo inválido")

        parts = token.strip().split(".")
        if len(parts) != 3:
            raise TokenDecodeError("Estructura de token inválida")

        version, body, mac_segment = parts
        model = PAYLOAD_MODELS.get(version)
        if model is None:
            raise TokenDecodeError(f"Versión de token no soportada: {version[:16]!r}")

        mac = _b64decode(mac_segment)
        raw = _b64decode(body)
        signed_part = f"{version}.{body}".encode("ascii")
        if not signer.verify_bytes(signed_part, mac, self._mac_key):
            raise TokenDecodeError("Firma de token inválida")

        if len(raw) <= _AEAD_NONCE_BYTES + _AEAD_TAG_BYTES:
            raise TokenDecodeError("Token truncado")

        try:
            plaintext = self._aead.decrypt(
                raw[:_AEAD_NONCE_BYTES], raw[_AEAD_NONCE_BYTES:], version.encode("ascii")
            )
        except InvalidTag as e:
            raise TokenDecodeError("Tag de autenticación inválido") from e

        try:
            payload = model.model_validate(json.loads(plaintext))
        except (ValueError, ValidationError) as e:
            raise TokenDecodeError("Payload de token inválido") from e

        if payload.exp < _epoch(now):
            raise TokenExpiredError(
                "Token vencido",
                expired_at=datetime.fromtimestamp(payload.exp, tz=timezone.utc)
            )

        return payload


_default_codec: Optional[TokenCodec] = None


def get_token_codec() -> TokenCodec:
    """Codec con QR_SECRET de la configuración (dependency de FastAPI)"""
    global _default_codec
    if _default_codec is None:
        _default_codec = TokenCodec()
    return _default_codec
