import logging
import os
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from authproxy.config import Settings
from authproxy.core.errors import AuthError, AuthErrorReason
from authproxy.models.auth import Claims

logger = logging.getLogger("authproxy.auth")

RSA_ALGORITHMS = ["RS256", "RS384", "RS512"]
HMAC_ALGORITHMS = ["HS256", "HS384", "HS512"]

_PEM_BEGIN = "-----BEGIN PUBLIC KEY-----"
_PEM_END = "-----END PUBLIC KEY-----"


def normalize_pem(value: str) -> bytes:
    """Repair PEM text that went through env files or container secrets.

    Handles surrounding quotes, literal ``\\n`` escapes and keys squashed
    onto a single line.
    """
    s = value.strip()
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        s = s[1:-1]
    s = s.replace("\\n", "\n")
    if _PEM_BEGIN in s and _PEM_END in s:
        s = s.replace(_PEM_BEGIN, _PEM_BEGIN + "\n")
        s = s.replace(_PEM_END, "\n" + _PEM_END)
        while "\n\n" in s:
            s = s.replace("\n\n", "\n")
    return s.encode("utf-8")


def load_rsa_public_key(value: str) -> RSAPublicKey:
    """Parse PEM text, falling back to reading ``value`` as a file path."""
    try:
        key = serialization.load_pem_public_key(normalize_pem(value))
    except ValueError as pem_error:
        path = value.strip().strip('"')
        if not os.path.isfile(path):
            raise ValueError(f"failed to parse public key: {pem_error}") from pem_error
        with open(path, "rb") as fh:
            key = serialization.load_pem_public_key(normalize_pem(fh.read().decode("utf-8")))

    if not isinstance(key, RSAPublicKey):
        raise ValueError("public key is not an RSA key")
    return key


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC)


class TokenValidator:
    """Verifies bearer JWTs and extracts the submitting tenant.

    Instances are immutable after construction and safe to share across
    concurrent requests.
    """

    def __init__(
        self,
        public_key: str = "",
        secret: str = "",
        skip_verify: bool = False,
        issuers: Iterable[str] = (),
        audiences: Iterable[str] = (),
        allow_customer_id: bool = True,
    ):
        if public_key:
            self._key: Any = load_rsa_public_key(public_key)
            self._algorithms = RSA_ALGORITHMS
        elif secret:
            self._key = secret
            self._algorithms = HMAC_ALGORITHMS
        else:
            raise ValueError("either RSA_PUBLIC_KEY or JWT_SECRET must be provided")

        self.skip_verify = skip_verify
        self._issuers: List[str] = list(issuers)
        self._audiences: List[str] = list(audiences)
        self._allow_customer_id = allow_customer_id

        if skip_verify:
            logger.warning(
                "INSECURE_SKIP_VERIFY enabled: token signatures will NOT be verified. "
                "Never run this configuration in production."
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenValidator":
        return cls(
            public_key=settings.rsa_public_key,
            secret=settings.jwt_secret,
            skip_verify=settings.insecure_skip_verify,
            issuers=settings.issuers,
            audiences=settings.audiences,
            allow_customer_id=settings.allow_customer_id,
        )

    def validate(self, token: str) -> Claims:
        try:
            payload = self._decode(token)
        except jwt.ExpiredSignatureError as e:
            raise AuthError(AuthErrorReason.EXPIRED_TOKEN, "token expired") from e
        except jwt.PyJWTError as e:
            raise AuthError(AuthErrorReason.MALFORMED_TOKEN, str(e)) from e

        claims = self._build_claims(payload)

        if self._issuers and claims.issuer not in self._issuers:
            raise AuthError(
                AuthErrorReason.INVALID_CLAIMS, f"invalid issuer: {claims.issuer}"
            )

        # Audience is only enforced when the token declares one
        if self._audiences and claims.audience:
            if not any(aud in self._audiences for aud in claims.audience):
                raise AuthError(AuthErrorReason.INVALID_CLAIMS, "invalid audience")

        if not claims.tenant_id:
            raise AuthError(
                AuthErrorReason.MISSING_TENANT,
                "customer_id or accountId not found in token",
            )
        return claims

    def _decode(self, token: str) -> Dict[str, Any]:
        options = {"verify_aud": False, "verify_iss": False, "verify_exp": True}
        if self.skip_verify:
            options["verify_signature"] = False
            return jwt.decode(token, options=options, leeway=0)
        return jwt.decode(
            token, self._key, algorithms=self._algorithms, options=options, leeway=0
        )

    def _build_claims(self, payload: Dict[str, Any]) -> Claims:
        account_id = payload.get("accountId")
        if account_id is not None:
            if isinstance(account_id, float) and account_id.is_integer():
                account_id = int(account_id)
            if isinstance(account_id, bool) or not isinstance(account_id, int):
                raise AuthError(
                    AuthErrorReason.MALFORMED_TOKEN, "accountId must be an integer"
                )

        customer_id = None
        if self._allow_customer_id:
            customer_id = payload.get("customer_id")
            if customer_id is not None and not isinstance(customer_id, str):
                raise AuthError(
                    AuthErrorReason.MALFORMED_TOKEN, "customer_id must be a string"
                )

        audience = payload.get("aud") or []
        if isinstance(audience, str):
            audience = [audience]

        try:
            return Claims(
                account_id=account_id,
                customer_id=customer_id,
                issuer=payload.get("iss"),
                subject=payload.get("sub"),
                audience=audience,
                issued_at=_timestamp(payload.get("iat")),
                expires_at=_timestamp(payload.get("exp")),
            )
        except (TypeError, ValueError, OverflowError) as e:
            raise AuthError(AuthErrorReason.MALFORMED_TOKEN, str(e)) from e
