"""Canonicalización y firmas HMAC-SHA256 para QR y callbacks de pago"""
import hashlib
import hmac
from typing import Any, Mapping, Union
from urllib.parse import quote


def canonicalize(fields: Mapping[str, Any]) -> bytes:
    """
    Serializar un conjunto de campos a bytes de forma determinística

    Formato: key=value&key=value, con las keys ordenadas y cada key/valor
    percent-encoded. Así los delimitadores nunca aparecen dentro de un valor
    y dos conjuntos distintos no pueden producir los mismos bytes.
    None se serializa como string vacío.
    """
    parts = []
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            value = ""
        parts.append(f"{quote(str(key), safe='')}={quote(str(value), safe='')}")
    return "&".join(parts).encode("utf-8")


def _secret_bytes(secret: Union[str, bytes]) -> bytes:
    if isinstance(secret, bytes):
        return secret
    return secret.encode("utf-8")


def sign_bytes(canonical: bytes, secret: Union[str, bytes]) -> bytes:
    """HMAC-SHA256 crudo (32 bytes)"""
    return hmac.new(_secret_bytes(secret), canonical, hashlib.sha256).digest()


def sign(canonical: bytes, secret: Union[str, bytes]) -> str:
    """Firmar bytes canónicos, retorna hex de 64 caracteres"""
    return sign_bytes(canonical, secret).hex()


def verify(canonical: bytes, signature: Any, secret: Union[str, bytes]) -> bool:
    """
    Verificar firma hex en tiempo constante

    Nunca lanza excepción: cualquier entrada malformada retorna False.
    """
    if not isinstance(signature, str) or not isinstance(canonical, (bytes, bytearray)):
        return False
    if not signature.isascii():
        return False
    expected = sign(bytes(canonical), secret)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii"))


def verify_bytes(canonical: bytes, signature: bytes, secret: Union[str, bytes]) -> bool:
    """Variante de verify para firmas binarias (tokens QR)"""
    if not isinstance(signature, (bytes, bytearray)):
        return False
    return hmac.compare_digest(bytes(signature), sign_bytes(canonical, secret))


def fingerprint(fields: Mapping[str, Any]) -> str:
    """Hash SHA-256 (hex) de la forma canónica, usado como llave de replay"""
    return hashlib.sha256(canonicalize(fields)).hexdigest()
