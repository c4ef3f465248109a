"""
CLI utility to mint SMART-on-FHIR access tokens for local testing.

In production, tokens are issued by the SMART authorization server (Okta,
Cognito, Keycloak, ...). For local development this script plays that role:
it mints tokens with the claims the engine reads (aud, iss, scp, fhirUser,
launch_response_patient). The engine does not check signatures itself, so the
signing secret only matters to whatever userinfo stub you run next to it.

Usage examples:

    # Patient-facing app with a patient in launch context
    python -m scripts.generate_token --sub alice --scope launch/patient patient/*.read \\
        --launch-patient Patient/1234

    # Practitioner with read access to everything (bulk export capable)
    python -m scripts.generate_token --sub dr-bob --scope user/*.read \\
        --fhir-user https://fhir.server.com/dev/Practitioner/5678

    # Scopes as a space delimited string (SMART_SCOPE_VALUE_TYPE=space)
    python -m scripts.generate_token --sub alice --scope patient/Patient.read --scope-format space

    # Expired token (for testing rejection)
    python -m scripts.generate_token --sub alice --scope patient/*.read --exp-hours -1
"""

import argparse
import datetime

import jwt

DEFAULT_AUDIENCE = "api://default"
DEFAULT_ISSUER = "http://localhost:8081/oauth2/default"


def generate_token(
    subject: str,
    scopes: list[str],
    secret: str = "dev-secret-change-me-0123456789abcdef",
    algorithm: str = "HS256",
    exp_hours: float = 8.0,
    audience: str | list[str] = DEFAULT_AUDIENCE,
    issuer: str = DEFAULT_ISSUER,
    scope_key: str = "scp",
    scope_format: str = "array",
    fhir_user: str | None = None,
    launch_patient: str | None = None,
    extra_claims: dict | None = None,
) -> str:
    """
    Generate a signed SMART access token.

    Args:
        subject: The "sub" claim - identifies who this token is for
        scopes: SMART scopes (e.g., ["launch/patient", "patient/*.read"])
        secret: The signing key
        algorithm: JWT signing algorithm (default: HS256)
        exp_hours: Hours until expiration (negative = already expired)
        audience: The "aud" claim, a string or a list of audiences
        issuer: The "iss" claim
        scope_key: Claim that carries the scopes ("scp" or "scope")
        scope_format: "array" for a JSON list, "space" for a delimited string
        fhir_user: Optional fhirUser claim
        launch_patient: Optional launch_response_patient claim
        extra_claims: Additional claims merged into the payload last

    Returns:
        The encoded JWT token string
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    payload: dict = {
        "sub": subject,
        "aud": audience,
        "iss": issuer,
        scope_key: " ".join(scopes) if scope_format == "space" else scopes,
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }
    if fhir_user:
        payload["fhirUser"] = fhir_user
    if launch_patient:
        payload["launch_response_patient"] = launch_patient
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(payload, secret, algorithm=algorithm)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate SMART-on-FHIR access tokens for local testing.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--sub", required=True, help="Subject claim (e.g., 'alice')")
    parser.add_argument(
        "--scope",
        nargs="+",
        default=[],
        help="SMART scopes (e.g., launch/patient patient/*.read)",
    )
    parser.add_argument("--aud", default=DEFAULT_AUDIENCE, help="Audience claim")
    parser.add_argument("--iss", default=DEFAULT_ISSUER, help="Issuer claim")
    parser.add_argument("--fhir-user", help="fhirUser claim, fully qualified")
    parser.add_argument("--launch-patient", help="Patient in launch context, e.g. Patient/1234")
    parser.add_argument("--scope-key", default="scp", help="Claim carrying the scopes")
    parser.add_argument(
        "--scope-format",
        choices=["array", "space"],
        default="array",
        help="Encode scopes as a JSON array or a space delimited string",
    )
    parser.add_argument("--secret", default="dev-secret-change-me-0123456789abcdef", help="JWT signing secret")
    parser.add_argument("--algorithm", default="HS256", help="JWT signing algorithm (default: HS256)")
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until token expires (negative = already expired, default: 8)",
    )

    args = parser.parse_args()

    token = generate_token(
        subject=args.sub,
        scopes=args.scope,
        secret=args.secret,
        algorithm=args.algorithm,
        exp_hours=args.exp_hours,
        audience=args.aud,
        issuer=args.iss,
        scope_key=args.scope_key,
        scope_format=args.scope_format,
        fhir_user=args.fhir_user,
        launch_patient=args.launch_patient,
    )

    print(f"Subject:    {args.sub}")
    print(f"Scopes:     {args.scope}")
    print(f"Audience:   {args.aud}")
    print(f"Issuer:     {args.iss}")
    print()
    print(f"Token: {token}")


if __name__ == "__main__":
    main()
