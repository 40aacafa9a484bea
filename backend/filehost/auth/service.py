"""Signed, time-bounded upload credentials.

A credential is an HS256 JWT carrying ``sub`` (the chat account it was
issued to), ``iss``, ``iat`` and ``exp``.  Nothing is stored server side:
a credential is valid exactly when its signature, issuer and timestamps
check out, and it stays valid (reusable) until it expires.
"""
import logging
import time
from typing import Optional, Tuple

import jwt

from filehost.config import AppConfig
from filehost.exceptions import TokenConfigurationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "iss", "iat", "exp"]


class TokenService:
    """Issues and verifies upload credentials.

    The secret and issuer are fixed for the lifetime of the instance; a
    configuration reload builds a new service instead of mutating this one.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        issuer: str,
        default_ttl: int = 3600,
        min_ttl: int = 60,
        max_ttl: int = 86400,
    ) -> None:
        if not secret_key:
            raise TokenConfigurationError("No signing secret configured for upload credentials")
        if not issuer:
            raise TokenConfigurationError("No issuer configured for upload credentials")
        self._secret_key = secret_key
        self.issuer = issuer
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl
        self.default_ttl = self.clamp_ttl(default_ttl)

    @classmethod
    def from_config(cls, config: AppConfig) -> "TokenService":
        tokens = config.tokens
        return cls(
            secret_key=config.secrets.tokens.secret_key,
            issuer=tokens.issuer,
            default_ttl=tokens.ttl_seconds,
            min_ttl=tokens.ttl_min_seconds,
            max_ttl=tokens.ttl_max_seconds,
        )

    def clamp_ttl(self, ttl: int) -> int:
        """Bound a requested lifetime to the configured range."""
        return max(self.min_ttl, min(int(ttl), self.max_ttl))

    def issue(self, identity: str, ttl: Optional[int] = None) -> str:
        """Issue a credential for ``identity`` valid for ``ttl`` seconds.

        Args:
            identity: Account name the credential is bound to.
            ttl: Requested lifetime; defaults to the configured lifetime and
                is clamped to the configured bounds.

        Returns:
            The encoded credential.
        """
        if not identity:
            raise ValueError("identity is required")
        lifetime = self.default_ttl if ttl is None else self.clamp_ttl(ttl)
        now = int(time.time())
        payload = {
            "sub": identity,
            "iss": self.issuer,
            "iat": now,
            "exp": now + lifetime,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> Tuple[Optional[str], bool]:
        """Check a credential.

        Returns ``(identity, True)`` for a valid credential and
        ``(None, False)`` for anything else; the reason is deliberately not
        reported to the caller.
        """
        if not token:
            return None, False
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.PyJWTError as e:
            logger.debug("Credential rejected: %s", type(e).__name__)
            return None, False

        identity = payload.get("sub")
        issued_at = payload.get("iat")
        if not isinstance(identity, str) or not identity:
            logger.debug("Credential rejected: bad subject")
            return None, False
        if not isinstance(issued_at, (int, float)) or issued_at > time.time():
            logger.debug("Credential rejected: issued in the future")
            return None, False
        return identity, True
