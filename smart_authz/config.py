"""
Configuration for the SMART authorization engine.

Two layers live here:

- SMARTConfig (plus ScopeRule / AccessRule): the fully resolved configuration
  the handler is constructed with. Pydantic validates it once, then it is
  frozen. The rule table inside it is the entire policy surface: no other code
  path grants access.

- Settings: pydantic-settings class that reads the same values from
  environment variables (12-factor style). Each field maps to an environment
  variable with the SMART_ prefix, e.g. `expected_aud_value` reads from
  SMART_EXPECTED_AUD_VALUE. Complex fields such as `scope_rule` are given as
  JSON. `Settings.smart_config()` turns it into a SMARTConfig.

Example rule table:

    {
        "patient": {"read": ["read", "search-type"], "write": []},
        "user": {"read": ["read", "search-type", "vread"], "write": ["create", "update"]},
        "launch": {"launch": ["read"], "patient": ["read"], "encounter": ["read"]}
    }

`patient/Observation.read` then maps to scope_rule.patient.read.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from smart_authz.types import Operation, ReadRuleOperation, WriteRuleOperation

ALL_READ_OPERATIONS: list[str] = [
    "read",
    "vread",
    "search-type",
    "search-system",
    "history-instance",
    "history-type",
    "history-system",
]


class AccessRule(BaseModel):
    """Operations granted by the read and write access types of one scope type."""

    model_config = ConfigDict(frozen=True)

    read: list[ReadRuleOperation] = Field(default_factory=list)
    write: list[WriteRuleOperation] = Field(default_factory=list)


class ScopeRule(BaseModel):
    """
    Maps scope type x access type to operations.

    `launch` is keyed by launch sub-type instead: "launch" is used for a bare
    `launch` scope, "patient" and "encounter" for `launch/patient` and
    `launch/encounter`.
    """

    model_config = ConfigDict(frozen=True)

    patient: AccessRule = Field(default_factory=AccessRule)
    user: AccessRule = Field(default_factory=AccessRule)
    system: AccessRule = Field(default_factory=AccessRule)
    launch: dict[Literal["launch", "patient", "encounter"], list[Operation]] | None = None


def default_scope_rule() -> ScopeRule:
    return ScopeRule(
        patient=AccessRule(read=ALL_READ_OPERATIONS, write=["create", "update", "patch"]),
        user=AccessRule(
            read=ALL_READ_OPERATIONS,
            write=["create", "update", "patch", "delete", "transaction", "batch"],
        ),
        system=AccessRule(read=["read"], write=[]),
    )


class SMARTConfig(BaseModel):
    """
    Resolved engine configuration, supplied once at handler construction.

    Attributes:
        version: Configuration format version, must match the handler's
        scope_key: Access token claim holding the scopes ('scp' or 'scope')
        scope_value_type: Whether that claim is a JSON array or a space
                          delimited string
        scope_rule: The rule table
        expected_aud_value: Required 'aud' value of the access token
        expected_iss_value: Required 'iss' value of the access token
        fhir_user_claim_path: Claim (dotted path allowed) holding the
                              requester's FHIR identity
        launch_context_path_prefix: Prefix of the launch context claims; the
                                    patient context is read from
                                    `<prefix>patient`
        user_info_endpoint: Endpoint that verifies the token and returns the
                            authoritative claims
        user_info_timeout: Seconds before the verification call gives up
    """

    model_config = ConfigDict(frozen=True)

    version: float = 1.0
    scope_key: str = "scp"
    scope_value_type: Literal["array", "space"] = "array"
    scope_rule: ScopeRule
    expected_aud_value: str
    expected_iss_value: str
    fhir_user_claim_path: str = "fhirUser"
    launch_context_path_prefix: str = "launch_response_"
    user_info_endpoint: str
    user_info_timeout: float = 10.0


class Settings(BaseSettings):
    """
    Environment-backed settings for a process embedding the engine.

    Only `log_level` and `api_url` are read by the host process itself, the
    remaining fields are handed to SMARTConfig.
    """

    # Logging verbosity. Maps to Python's logging levels.
    log_level: str = "info"

    # Base URL of this FHIR server, with trailing "/". Identities whose
    # hostname differs are treated as external.
    api_url: str = "http://localhost:8080/"
    fhir_version: Literal["4.0.1", "3.0.1"] = "4.0.1"

    version: float = 1.0
    scope_key: str = "scp"
    scope_value_type: Literal["array", "space"] = "array"
    scope_rule: ScopeRule = Field(default_factory=default_scope_rule)
    expected_aud_value: str = "api://default"
    expected_iss_value: str = "http://localhost:8081/oauth2/default"
    fhir_user_claim_path: str = "fhirUser"
    launch_context_path_prefix: str = "launch_response_"
    user_info_endpoint: str = "http://localhost:8081/oauth2/default/v1/userinfo"
    user_info_timeout: float = 10.0

    model_config = {
        "env_prefix": "SMART_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    def smart_config(self) -> SMARTConfig:
        return SMARTConfig(
            version=self.version,
            scope_key=self.scope_key,
            scope_value_type=self.scope_value_type,
            scope_rule=self.scope_rule,
            expected_aud_value=self.expected_aud_value,
            expected_iss_value=self.expected_iss_value,
            fhir_user_claim_path=self.fhir_user_claim_path,
            launch_context_path_prefix=self.launch_context_path_prefix,
            user_info_endpoint=self.user_info_endpoint,
            user_info_timeout=self.user_info_timeout,
        )
