"""
Access token decoding and verification (the Authentication layer).

The handler asks two things of an access token:

1. Can it be trusted for this API? The JWT is decoded with PyJWT and its
   'aud' and 'iss' claims are checked against the configured values. 'exp' is
   checked when present. Anything wrong here is an InvalidTokenError.

2. Is it authentic, and who does it belong to? That is answered by the
   identity provider, not by us: the token is sent as a Bearer credential to
   the provider's userinfo endpoint, which returns the authoritative claims
   (fhirUser, sub, ...). Any transport failure, non-2xx status or empty body
   becomes an InvalidTokenError. The call is awaited once and never retried.

Token structure (JWT payload), as issued by a SMART authorization server:
    {
        "iss": "https://auth.example.com/oauth2/default",
        "aud": "api://default",                      # or a list of audiences
        "sub": "alice@example.com",
        "scp": ["launch/patient", "patient/Observation.read"],
        "launch_response_patient": "Patient/1234",
        "exp": 1738800000
    }
"""

from typing import Any, Awaitable, Callable

import httpx
import jwt

from smart_authz.errors import InvalidTokenError
from smart_authz.log import get_logger

logger = get_logger()

# Anything that takes the raw access token and returns authoritative claims.
TokenVerifier = Callable[[str], Awaitable[dict[str, Any]]]

GENERIC_TOKEN_ERROR = "Invalid access token"


def decode_access_token(access_token: str, expected_aud: str, expected_iss: str) -> dict[str, Any]:
    """
    Decode the JWT payload, trusting it only if 'aud' and 'iss' match.

    The signature is not checked here; authenticity is established by the
    token verifier call.

    Raises:
        InvalidTokenError: If the token is malformed, expired, or issued for
                           another audience or by another issuer
    """
    try:
        return jwt.decode(
            access_token,
            options={
                "verify_signature": False,
                "verify_aud": True,
                "verify_iss": True,
                "verify_exp": True,
            },
            audience=expected_aud,
            issuer=expected_iss,
        )
    except jwt.InvalidTokenError as e:
        logger.error(
            "access_token could not be trusted",
            extra={"auth_data": {"decision": "rejected", "reason": type(e).__name__}},
        )
        raise InvalidTokenError(GENERIC_TOKEN_ERROR) from e


def get_claim(claims: dict[str, Any], path: str) -> Any:
    """
    Look up a claim by dotted path, e.g. "ext.launch_response_patient".

    A claim whose literal name contains the dots wins over nested lookup.
    Returns None when any segment is missing.
    """
    if path in claims:
        return claims[path]
    value: Any = claims
    for segment in path.split("."):
        if not isinstance(value, dict) or segment not in value:
            return None
        value = value[segment]
    return value


class UserInfoClient:
    """
    Token verifier backed by the identity provider's userinfo endpoint.

    Pass a shared httpx.AsyncClient to reuse its connection pool; without one
    a short-lived client is opened per call.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._http_client = http_client

    async def _get(self, access_token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"}
        if self._http_client is not None:
            return await self._http_client.get(self.endpoint, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.endpoint, headers=headers)

    async def __call__(self, access_token: str) -> dict[str, Any]:
        try:
            response = await self._get(access_token)
            response.raise_for_status()
            claims = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Token verification rejected by the identity provider",
                extra={"auth_data": {"status_code": e.response.status_code, "decision": "rejected"}},
            )
            raise InvalidTokenError(GENERIC_TOKEN_ERROR) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Token verification call failed",
                extra={"auth_data": {"reason": type(e).__name__, "decision": "rejected"}},
            )
            raise InvalidTokenError(GENERIC_TOKEN_ERROR) from e

        if not isinstance(claims, dict) or not claims:
            logger.error("Token verification returned no claims")
            raise InvalidTokenError(GENERIC_TOKEN_ERROR)
        return claims
