"""ES256 token signing for the App Store Connect API.

See: https://developer.apple.com/documentation/appstoreconnectapi/generating-tokens-for-api-requests
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from asc_crash_fetcher.exceptions import CredentialError
from asc_crash_fetcher.logging import get_logger

logger = get_logger(__name__)

AUDIENCE = "appstoreconnect-v1"
ALGORITHM = "ES256"
DEFAULT_LIFETIME = timedelta(minutes=20)
DEFAULT_REFRESH_MARGIN = timedelta(seconds=60)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def load_private_key(pem: str) -> ec.EllipticCurvePrivateKey:
    """Parse a PKCS#8 PEM (.p8) EC private key.

    Raises:
        CredentialError: If the PEM is malformed or not an EC key.
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CredentialError(f"invalid private key: {e}") from e

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise CredentialError("private key is not an EC (P-256) key")
    return key


def sign(
    issuer_id: str,
    key_id: str,
    private_key: str | ec.EllipticCurvePrivateKey,
    *,
    now: datetime | None = None,
    lifetime: timedelta = DEFAULT_LIFETIME,
) -> str:
    """Produce a signed bearer token.

    Args:
        issuer_id: Issuer id from the API keys page
        key_id: Key id of the private key
        private_key: PEM text or an already parsed key
        now: Issue time (defaults to the current UTC time)
        lifetime: Validity window; App Store Connect rejects more than 20 minutes

    Returns:
        Compact JWT string

    Raises:
        CredentialError: If the key cannot be parsed or used for signing.
    """
    key = load_private_key(private_key) if isinstance(private_key, str) else private_key
    issued_at = now or _utcnow()
    claims = {
        "iss": issuer_id,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
        "aud": AUDIENCE,
    }
    try:
        return jwt.encode(
            claims,
            key,
            algorithm=ALGORITHM,
            headers={"kid": key_id, "typ": "JWT"},
        )
    except (jwt.PyJWTError, ValueError, TypeError) as e:
        raise CredentialError(f"failed to sign API token: {e}") from e


class TokenSigner:
    """Holds credentials and the last issued token.

    The key is parsed on construction so that a bad key fails before any
    request is made. ``token()`` reuses the cached token until it is within
    ``refresh_margin`` of expiry. Tokens live in memory only.

    Usage:
        signer = TokenSigner(issuer_id, key_id, pem)
        headers = {"Authorization": f"Bearer {signer.token()}"}
    """

    def __init__(
        self,
        issuer_id: str,
        key_id: str,
        private_key: str,
        *,
        lifetime: timedelta = DEFAULT_LIFETIME,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Clock = _utcnow,
    ) -> None:
        """Initialize the signer.

        Args:
            issuer_id: Issuer id
            key_id: Key id
            private_key: PEM text of the .p8 key
            lifetime: Validity window of issued tokens
            refresh_margin: Re-sign when the cached token expires within this margin
            clock: Source of the current time (injectable for tests)

        Raises:
            CredentialError: If the key is malformed.
        """
        self._issuer_id = issuer_id
        self._key_id = key_id
        self._key = load_private_key(private_key)
        self._lifetime = lifetime
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: str | None = None
        self._expires_at: datetime | None = None

    @property
    def key_id(self) -> str:
        """Key id placed in the token header."""
        return self._key_id

    @property
    def expires_at(self) -> datetime | None:
        """Expiry of the cached token (None before the first call)."""
        return self._expires_at

    def token(self) -> str:
        """Return a valid token, signing a fresh one when needed."""
        now = self._clock()
        if (
            self._token is not None
            and self._expires_at is not None
            and now + self._refresh_margin < self._expires_at
        ):
            return self._token

        self._token = sign(
            self._issuer_id,
            self._key_id,
            self._key,
            now=now,
            lifetime=self._lifetime,
        )
        self._expires_at = now + self._lifetime
        logger.debug("Signed new API token (expires {})", self._expires_at.isoformat())
        return self._token

    def invalidate(self) -> None:
        """Drop the cached token so the next call re-signs."""
        self._token = None
        self._expires_at = None
