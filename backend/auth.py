"""
Identity provider seam.

The API trusts whatever user id a TokenVerifier returns for a bearer token.
StaticTokenVerifier covers deployments that hand out fixed tokens through
AUTH_TOKENS; an external identity provider plugs in by implementing verify().
"""

import hmac
import logging

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Maps a bearer credential to a stable user id."""

    def verify(self, token: str) -> str | None:
        """Return the user id for a valid token, None otherwise."""
        raise NotImplementedError


class StaticTokenVerifier(TokenVerifier):
    """Verifier backed by a fixed token -> user id mapping."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)
        if not self._tokens:
            logger.warning("No AUTH_TOKENS configured, every authenticated request will be rejected")

    def verify(self, token: str) -> str | None:
        if not token:
            return None
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return user_id
        return None


def parse_bearer(header_value: str | None) -> str | None:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not header_value or not header_value.startswith("Bearer "):
        return None
    token = header_value[len("Bearer ") :].strip()
    return token or None
