"""
Request gate: resolves the caller's identity from an access token before any
ledger operation runs.
"""

from typing import Optional

from .errors import UnauthorizedError
from .tokens import TokenSigner


class RequestGate:
    """Validates access tokens on protected operations"""

    def __init__(self, signer: TokenSigner):
        self.signer = signer

    def authorize(self, access_token: Optional[str]) -> str:
        """Return the user id embedded in a valid access token"""
        claims = self.signer.verify(access_token or "")
        return claims["sub"]

    def authorize_header(self, authorization: Optional[str]) -> str:
        """Same as authorize() for a raw `Authorization: Bearer <token>` header"""
        if not authorization:
            raise UnauthorizedError("Not authenticated", code="invalid_token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise UnauthorizedError("Not authenticated", code="invalid_token")
        return self.authorize(token.strip())
