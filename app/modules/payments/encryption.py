"""
Cifrado simétrico (Fernet) de credenciales de procesadores.

Sin PROCESSOR_ENCRYPTION_KEY la llave se deriva de APP_SECRET_STRING.
"""
import base64
import hashlib
import json
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings
from app.common.errors import AppError


def _fernet() -> Fernet:
    key = settings.PROCESSOR_ENCRYPTION_KEY
    if not key:
        digest = hashlib.sha256(settings.APP_SECRET_STRING.encode()).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    return _fernet().encrypt(json.dumps(credentials).encode()).decode()


def decrypt_credentials(token: str) -> Dict[str, Any]:
    try:
        return json.loads(_fernet().decrypt(token.encode()))
    except InvalidToken:
        raise AppError("Stored processor credentials could not be decrypted")
