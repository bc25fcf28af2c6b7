"""
Access-token signing with PyJWT.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .errors import UnauthorizedError
from .logging_config import get_logger


class TokenSigner:
    """Issues and verifies short-lived signed access tokens"""

    def __init__(self, secret: str, algorithm: str = "HS256",
                 expires_in: timedelta = timedelta(minutes=15)):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        self.expires_in = expires_in
        self.logger = get_logger("core_wallet.tokens")

    def sign(self, claims: Dict[str, Any], now: Optional[datetime] = None) -> str:
        """Sign claims, adding iat, exp and a unique jti"""
        now = now or datetime.now(timezone.utc)
        payload = dict(claims)
        payload["iat"] = now
        payload["exp"] = now + self.expires_in
        payload["jti"] = uuid.uuid4().hex
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def issue_access_token(self, user_id: str, username: str) -> str:
        return self.sign({"sub": user_id, "username": username})

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of a valid token; raise UnauthorizedError otherwise"""
        if not token:
            raise UnauthorizedError("Missing access token", code="invalid_token")
        try:
            claims = jwt.decode(
                token, self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub"]}
            )
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Access token expired", code="token_expired")
        except jwt.InvalidTokenError as e:
            self.logger.debug(f"JWT verification failed: {e}")
            raise UnauthorizedError("Invalid access token", code="invalid_token")

        if not isinstance(claims.get("sub"), str) or not claims["sub"]:
            raise UnauthorizedError("Invalid access token", code="invalid_token")
        return claims
