# commons/security.py
import re
import secrets
from typing import Optional

_MODIFICATION_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def generate_modification_key() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return secrets.token_urlsafe(32)


def is_valid_modification_key(key: Optional[str]) -> bool:
    return bool(key) and _MODIFICATION_KEY_RE.match(key) is not None


def keys_match(presented: Optional[str], expected: Optional[str]) -> bool:
    if not presented or not expected:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


def modification_url(base_url: str, key: str, kind: str = "builder") -> str:
    return f"{base_url.rstrip('/')}/modify/{kind}/{key}"
