"""Identity verification for the AI proxy gateway.

Callers authenticate with ``Authorization: Bearer <token>``. In production the
token is a Firebase ID token verified against Google's public certificates.
For local development a static map of token hashes to user ids can be used
instead; tokens are never stored in plaintext, only their SHA-256 hashes.
"""

import asyncio
import hashlib
from typing import Dict, Optional, Protocol

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from uplift_gateway.errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
)

HEADER_REQUIRED = "Authorization header required"


class IdentityVerifier(Protocol):
    """Turns a bearer credential into a caller identity."""

    async def verify(self, token: str) -> str:
        """Return the user id the token was issued to.

        Raises:
            AuthenticationError: If the token is invalid or expired.
        """
        ...


def extract_bearer_token(header_value: Optional[str]) -> str:
    """Pull the token out of an Authorization header.

    Raises:
        AuthenticationError: If the header is missing or not a Bearer credential.
    """
    if not header_value:
        raise AuthenticationError(HEADER_REQUIRED)

    scheme, _, token = header_value.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError(HEADER_REQUIRED, detail="Malformed Authorization header")
    return token


def confirm_identity(token_user_id: str, body_user_id: str) -> None:
    """Reject requests whose body claims a different user than the token.

    Raises:
        AuthorizationError: On mismatch.
    """
    if token_user_id != body_user_id:
        raise AuthorizationError(
            detail="Token issued to {} used for userId {}".format(
                token_user_id, body_user_id
            )
        )


def hash_token(raw_token: str) -> str:
    """Compute the SHA-256 hash of a raw token.

    Use this to generate entries for ``auth.static_tokens`` in config files::

        python -c "from uplift_gateway.auth import hash_token; print(hash_token('dev-token'))"
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class StaticTokenVerifier:
    """Verifier backed by a fixed ``token_hash -> user_id`` mapping."""

    def __init__(self, token_hashes: Dict[str, str]) -> None:
        self._token_hashes = dict(token_hashes)

    async def verify(self, token: str) -> str:
        user_id = self._token_hashes.get(hash_token(token))
        if user_id is None:
            raise AuthenticationError(detail="Unknown static token")
        return user_id


class FirebaseTokenVerifier:
    """Verifies Firebase ID tokens with google-auth.

    Certificate fetching and signature checks are blocking, so verification
    runs in a worker thread.
    """

    def __init__(self, project_id: str) -> None:
        if not project_id:
            raise ValueError("A Firebase project id is required to check token audience")
        self._project_id = project_id
        self._request = google_requests.Request()

    def _verify_sync(self, token: str) -> str:
        claims = id_token.verify_firebase_token(
            token, self._request, audience=self._project_id
        )
        if not claims:
            raise AuthenticationError(detail="Token verification returned no claims")
        user_id = claims.get("user_id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError(detail="Token has no subject")
        return user_id

    async def verify(self, token: str) -> str:
        try:
            return await asyncio.to_thread(self._verify_sync, token)
        except google_exceptions.TransportError as exc:
            raise InternalError(detail="Could not fetch token certificates: {}".format(exc))
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            raise AuthenticationError(detail=str(exc))
