"""
Validadores de formato compartidos entre módulos
"""
import re
import unicodedata

API_KEY_PATTERN = re.compile(r'^tab_(live|test)_[a-f0-9]{32}$')
TIME_PATTERN = re.compile(r'^([01][0-9]|2[0-3]):[0-5][0-9]$')
CURRENCY_PATTERN = re.compile(r'^[A-Z]{3}$')


def validate_api_key_format(key: str) -> bool:
    """
    Valida el formato de una API key.
    Formato: tab_{live|test}_{32 hex}
    """
    return bool(key) and API_KEY_PATTERN.match(key) is not None


def validate_time_hhmm(value: str) -> bool:
    """Valida una hora en formato HH:MM (24h)."""
    return bool(value) and TIME_PATTERN.match(value) is not None


def validate_currency(code: str) -> bool:
    """Código ISO 4217 en mayúsculas."""
    return bool(code) and CURRENCY_PATTERN.match(code) is not None


def slugify(value: str) -> str:
    """
    Convierte un nombre en slug url-safe.
    "Hotel Côte d'Azur" -> "hotel-cote-d-azur"
    """
    normalized = unicodedata.normalize('NFKD', value).encode('ascii', 'ignore').decode('ascii')
    slug = re.sub(r'[^a-z0-9]+', '-', normalized.lower()).strip('-')
    return slug or 'organization'
