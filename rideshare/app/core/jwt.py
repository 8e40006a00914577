"""
Bearer token decoding.

Tokens are issued by the external auth service with the shared secret and
carry 'sub' (username), 'user_id' and 'role'. This service only verifies
them.
"""

from typing import Optional, Dict, Any
from jose import JWTError, jwt
from rideshare.app.core.config import settings


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified payload, or None for a bad signature, expired token or garbage."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
