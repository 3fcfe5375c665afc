"""Excepciones compartidas del motor de validación y callbacks"""


class TokenError(Exception):
    """Error base de tokens QR"""


class TokenDecodeError(TokenError):
    """Token malformado, con firma inválida o versión no soportada"""


class TokenExpiredError(TokenError):
    """Token auténtico pero fuera de su ventana de validez"""

    def __init__(self, message: str, expired_at=None):
        super().__init__(message)
        self.expired_at = expired_at


class StoreUnavailableError(Exception):
    """Error de I/O contra el datastore (conexión, DNS, pool)"""


class StoreTimeoutError(Exception):
    """
    La operación contra el datastore excedió su timeout.

    No se reintenta: la operación original pudo haber hecho commit.
    """
