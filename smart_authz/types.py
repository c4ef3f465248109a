"""
Data model shared by the scope parser, the permission resolver and the handler.

All types here are frozen dataclasses or enums. They are built fresh for every
request from the decoded token and the request parameters, used for a single
authorization decision and then discarded. Nothing is shared or mutated
between requests.

Scope descriptors form a small tagged union:

    ClinicalScope   "patient/Observation.read"  -> (PATIENT, "Observation", READ)
    LaunchScope     "launch/patient"            -> (PATIENT)

Scope types and access types are closed enums, so adding a new scope type
means adding an enum member and handling it in scopes.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
# The fixed enumeration of FHIR interactions the host server asks about.
Operation = Literal[
    "read",
    "vread",
    "update",
    "patch",
    "delete",
    "history-instance",
    "history-type",
    "history-system",
    "create",
    "search-type",
    "search-system",
    "transaction",
    "batch",
]

ReadRuleOperation = Literal[
    "read",
    "vread",
    "history-type",
    "history-instance",
    "search-type",
    "transaction",
    "batch",
    "search-system",
    "history-system",
]

WriteRuleOperation = Literal["transaction", "batch", "create", "update", "delete", "patch"]

SEARCH_OPERATIONS: tuple[str, ...] = (
    "search-type",
    "search-system",
    "history-type",
    "history-instance",
    "history-system",
)

WRITE_OPERATIONS: tuple[str, ...] = ("create", "update", "patch", "delete")

BULK_DATA_OPERATIONS: tuple[str, ...] = ("initiate-export", "get-status-export", "cancel-export")


# ---------------------------------------------------------------------------
# Scope descriptors
# ---------------------------------------------------------------------------
class ScopeType(str, Enum):
    PATIENT = "patient"
    USER = "user"
    SYSTEM = "system"


class AccessType(str, Enum):
    READ = "read"
    WRITE = "write"
    ALL = "*"


class LaunchType(str, Enum):
    PATIENT = "patient"
    ENCOUNTER = "encounter"


@dataclass(frozen=True)
class ClinicalScope:
    """
    A parsed `<scopeType>/<resourceType>.<accessType>` scope.

    Attributes:
        scope_type: Whose data the scope is about (patient, user or system)
        resource_type: A FHIR resource type name, or "*" for every type
        access_type: read, write or "*" (both)
    """

    scope_type: ScopeType
    resource_type: str
    access_type: AccessType

    def __str__(self) -> str:
        return f"{self.scope_type.value}/{self.resource_type}.{self.access_type.value}"


@dataclass(frozen=True)
class LaunchScope:
    """A parsed `launch` or `launch/<launchType>` scope."""

    launch_type: LaunchType | None = None

    def __str__(self) -> str:
        if self.launch_type is None:
            return "launch"
        return f"launch/{self.launch_type.value}"


SmartScope = ClinicalScope | LaunchScope


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FhirResource:
    """
    Structured form of a FHIR reference such as
    "https://fhir.server.com/dev/Patient/1234".

    The hostname keeps its trailing "/" so that it can be compared verbatim
    with the server's API URL.
    """

    hostname: str
    resource_type: str
    id: str

    @property
    def short_reference(self) -> str:
        return f"{self.resource_type}/{self.id}"

    @property
    def reference(self) -> str:
        return f"{self.hostname}{self.resource_type}/{self.id}"


@dataclass(frozen=True)
class UserIdentity:
    """
    The caller's identity for the duration of one request.

    Attributes:
        scopes: Every scope granted by the access token
        usable_scopes: The subset of scopes that authorized the request
        fhir_user_object: The requester's own FHIR identity. Only set when a
                          "user/" scope was usable for the request.
        patient_launch_context: The patient in launch context. Only set when a
                                "patient/" scope was usable for the request.
        claims: Authoritative claims returned by the token verifier
    """

    scopes: list[str] = field(default_factory=list)
    usable_scopes: list[str] = field(default_factory=list)
    fhir_user_object: FhirResource | None = None
    patient_launch_context: FhirResource | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def sub(self) -> str | None:
        return self.claims.get("sub")


# ---------------------------------------------------------------------------
# Request / response shapes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BulkDataAuth:
    operation: str
    export_type: Literal["system", "patient", "group"]


@dataclass(frozen=True)
class SearchFilter:
    key: str
    value: list[str]
    comparison_operator: str = "=="
    logical_operator: str = "OR"


@dataclass(frozen=True)
class VerifyAccessTokenRequest:
    access_token: str
    operation: str
    resource_type: str | None = None
    id: str | None = None
    vid: str | None = None
    bulk_data_auth: BulkDataAuth | None = None


@dataclass(frozen=True)
class AccessBulkDataJobRequest:
    user_identity: UserIdentity
    job_owner_id: str


@dataclass(frozen=True)
class GetSearchFilterBasedOnIdentityRequest:
    user_identity: UserIdentity
    operation: str
    resource_type: str | None = None


@dataclass(frozen=True)
class BatchReadWriteRequest:
    operation: str
    resource_type: str
    id: str = ""
    resource: Any = None
    full_url: str = ""


@dataclass(frozen=True)
class AuthorizationBundleRequest:
    user_identity: UserIdentity
    requests: list[BatchReadWriteRequest]


@dataclass(frozen=True)
class AllowedResourceTypesForOperationRequest:
    user_identity: UserIdentity
    operation: str


@dataclass(frozen=True)
class ReadResponseAuthorizedRequest:
    user_identity: UserIdentity
    operation: str
    read_response: dict[str, Any]


@dataclass(frozen=True)
class WriteRequestAuthorizedRequest:
    user_identity: UserIdentity
    operation: str
    resource_body: Any
