"""
Shared test fixtures for the SMART authorization engine test suite.

Key fixtures:
- scope_rule / smart_config: the rule table and configuration most tests use
- make_token: factory for access tokens (delegates to scripts.generate_token)
- make_handler: factory for SMARTHandler with a stubbed token verifier, so no
  test talks to a real identity provider

Testing approach:
- test_scopes.py / test_identity.py: unit tests for the pure grammar, resolver
  and reference-matching functions.
- test_auth.py: token decoding and the userinfo client, with the HTTP call
  served by httpx.MockTransport.
- test_handler.py: the seven authorization decisions end to end.
"""

import pytest

from scripts.generate_token import generate_token
from smart_authz.config import ALL_READ_OPERATIONS, AccessRule, ScopeRule, SMARTConfig
from smart_authz.handler import SMARTHandler
from smart_authz.types import FhirResource

# ---------------------------------------------------------------------------
# Known test values
# ---------------------------------------------------------------------------
EXPECTED_AUD = "api://default"
EXPECTED_ISS = "https://dev-6460611.okta.com/oauth2/default"
USER_INFO_ENDPOINT = f"{EXPECTED_ISS}/userInfo"
API_URL = "https://fhir.server.com/dev/"
EXTERNAL_URL = "https://fhir.server.com/dev/test/"

ALL_WRITE_OPERATIONS = ["create", "update", "delete", "patch", "transaction", "batch"]

PATIENT_IDENTITY = FhirResource(hostname=API_URL, resource_type="Patient", id="1234")
PRACTITIONER_IDENTITY = FhirResource(hostname=API_URL, resource_type="Practitioner", id="1234")
EXTERNAL_PRACTITIONER_IDENTITY = FhirResource(hostname=EXTERNAL_URL, resource_type="Practitioner", id="1234")


def build_scope_rule() -> ScopeRule:
    return ScopeRule(
        patient=AccessRule(read=ALL_READ_OPERATIONS, write=["update", "patch", "create"]),
        user=AccessRule(read=ALL_READ_OPERATIONS, write=[]),
        system=AccessRule(read=ALL_READ_OPERATIONS, write=ALL_WRITE_OPERATIONS),
        launch={
            "launch": ALL_READ_OPERATIONS,
            "patient": ALL_READ_OPERATIONS,
            "encounter": ALL_READ_OPERATIONS,
        },
    )


def build_config(**overrides) -> SMARTConfig:
    values = {
        "version": 1.0,
        "scope_key": "scp",
        "scope_value_type": "array",
        "scope_rule": build_scope_rule(),
        "expected_aud_value": EXPECTED_AUD,
        "expected_iss_value": EXPECTED_ISS,
        "fhir_user_claim_path": "fhirUser",
        "launch_context_path_prefix": "launch_response_",
        "user_info_endpoint": USER_INFO_ENDPOINT,
    }
    values.update(overrides)
    return SMARTConfig(**values)


@pytest.fixture
def scope_rule() -> ScopeRule:
    return build_scope_rule()


@pytest.fixture
def smart_config() -> SMARTConfig:
    return build_config()


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to mint access tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(scopes=["patient/*.read"], launch_patient="Patient/1234")
    """

    def _make_token(
        sub: str = "test@test.com",
        scopes: list[str] | None = None,
        audience: str | list[str] = EXPECTED_AUD,
        issuer: str = EXPECTED_ISS,
        **kwargs,
    ) -> str:
        return generate_token(
            subject=sub,
            scopes=scopes or [],
            audience=audience,
            issuer=issuer,
            **kwargs,
        )

    return _make_token


# ---------------------------------------------------------------------------
# Handler factory fixture
# ---------------------------------------------------------------------------
class StubVerifier:
    """Token verifier that returns fixed claims and records the tokens it saw."""

    def __init__(self, claims: dict):
        self.claims = claims
        self.tokens: list[str] = []

    async def __call__(self, access_token: str) -> dict:
        self.tokens.append(access_token)
        return dict(self.claims)


@pytest.fixture
def make_handler():
    """
    Factory fixture for SMARTHandler instances.

    `claims` are what the stubbed identity provider returns for any token.
    """

    def _make_handler(claims: dict | None = None, config: SMARTConfig | None = None, **kwargs) -> SMARTHandler:
        verifier = StubVerifier(claims if claims is not None else {"sub": "test@test.com"})
        return SMARTHandler(
            config or build_config(),
            API_URL,
            "4.0.1",
            token_verifier=verifier,
            **kwargs,
        )

    return _make_handler
