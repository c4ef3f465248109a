"""
SMART scope grammar parser and permission resolver.

Scope grammar (first match wins, anchored at both ends):

    launch[/patient|/encounter]                              -> LaunchScope
    (patient|user|system)/(ResourceType|*).(read|write|*)    -> ClinicalScope

ResourceType must start with an uppercase ASCII letter followed by letters
only. Anything else ("openid", "profile", "fhirUser", vendor scopes) raises
NotAScopeError, which every aggregating caller in this module catches so that
a single foreign scope never aborts the evaluation of the others.

Permission resolution turns one scope plus the request context into the set of
operations the scope authorizes, using the rule table from the configuration:

    patient/*.read   + scope_rule.patient.read         -> ["read", "search-type", ...]
    user/Patient.*   + scope_rule.user.read + .write   -> [...]
    launch/patient   + scope_rule.launch["patient"]    -> [...]

A scope is "sufficient" for a request when the requested operation is in that
set. Aggregation across scopes is a logical OR.
"""

import re
from typing import Any

from smart_authz.config import ScopeRule
from smart_authz.errors import NotAScopeError
from smart_authz.types import (
    BULK_DATA_OPERATIONS,
    AccessType,
    BulkDataAuth,
    ClinicalScope,
    LaunchScope,
    LaunchType,
    ScopeType,
    SmartScope,
)

LAUNCH_SCOPE_REGEX = re.compile(r"^launch(/(?P<launchType>patient|encounter))?$")
CLINICAL_SCOPE_REGEX = re.compile(
    r"^(?P<scopeType>patient|user|system)/(?P<scopeResourceType>[A-Z][a-zA-Z]+|\*)\.(?P<accessType>read|write|\*)$"
)

SYSTEM_WIDE_OPERATIONS = ("search-system", "history-system")
BUNDLE_OPERATIONS = ("transaction", "batch")


# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------
def parse_clinical_scope(scope: str) -> ClinicalScope:
    """
    Parse a clinical scope such as "user/Observation.read".

    Raises:
        NotAScopeError: If the string is not a clinical scope (launch scopes
                        included)
    """
    if not isinstance(scope, str):
        raise NotAScopeError(str(scope))
    match = CLINICAL_SCOPE_REGEX.match(scope)
    if match is None:
        raise NotAScopeError(scope)
    return ClinicalScope(
        scope_type=ScopeType(match.group("scopeType")),
        resource_type=match.group("scopeResourceType"),
        access_type=AccessType(match.group("accessType")),
    )


def parse_scope(scope: str) -> SmartScope:
    """
    Parse any SMART scope, launch or clinical.

    Raises:
        NotAScopeError: If the string matches neither grammar
    """
    if not isinstance(scope, str):
        raise NotAScopeError(str(scope))
    match = LAUNCH_SCOPE_REGEX.match(scope)
    if match:
        launch_type = match.group("launchType")
        return LaunchScope(launch_type=LaunchType(launch_type) if launch_type else None)
    return parse_clinical_scope(scope)


def get_scopes(scope_claim: Any, value_type: str = "array") -> list[str]:
    """
    Normalise the raw scope claim of an access token into a list of strings.

    With value_type "array" the claim must be a JSON list, with "space" it
    must be a space delimited string. A claim of the other shape is treated
    as carrying no scopes.
    """
    if value_type == "array" and isinstance(scope_claim, list):
        return [scope for scope in scope_claim if isinstance(scope, str)]
    if value_type == "space" and isinstance(scope_claim, str):
        return scope_claim.split()
    return []


# ---------------------------------------------------------------------------
# Permission resolution
# ---------------------------------------------------------------------------
def get_valid_operations_for_scope_type_and_access_type(
    scope_type: ScopeType,
    access_type: AccessType,
    scope_rule: ScopeRule,
) -> list[str]:
    rule = getattr(scope_rule, scope_type.value)
    valid_operations: list[str] = []
    if access_type in (AccessType.ALL, AccessType.READ):
        valid_operations = list(rule.read)
    if access_type in (AccessType.ALL, AccessType.WRITE):
        valid_operations = valid_operations + list(rule.write)
    return valid_operations


def get_valid_operations_for_launch_scope(scope: LaunchScope, scope_rule: ScopeRule) -> list[str]:
    if scope_rule.launch is None:
        return []
    key = scope.launch_type.value if scope.launch_type else "launch"
    return list(scope_rule.launch.get(key, []))


def get_valid_operations_for_scope(
    scope: SmartScope,
    scope_rule: ScopeRule,
    req_operation: str,
    req_resource_type: str | None = None,
) -> list[str]:
    # Launch scopes are looked up by launch type only, the resource is irrelevant
    if isinstance(scope, LaunchScope):
        return get_valid_operations_for_launch_scope(scope, scope_rule)

    # Type level requests: the scope must name the type or use the wildcard
    if req_resource_type:
        if scope.resource_type in ("*", req_resource_type):
            return get_valid_operations_for_scope_type_and_access_type(
                scope.scope_type, scope.access_type, scope_rule
            )
        return []

    # No resource type: system-wide search and history need "*" as the
    # scope's resource type, while bundles are checked entry by entry later
    if (req_operation in SYSTEM_WIDE_OPERATIONS and scope.resource_type == "*") or (
        req_operation in BUNDLE_OPERATIONS
    ):
        return get_valid_operations_for_scope_type_and_access_type(
            scope.scope_type, scope.access_type, scope_rule
        )
    return []


def is_smart_scope_sufficient_for_bulk_data_access(
    bulk_data_auth: BulkDataAuth,
    scope: SmartScope,
    scope_rule: ScopeRule,
) -> bool:
    if not isinstance(scope, ClinicalScope):
        return False
    # Only system level export is supported
    has_correct_scope = (
        bulk_data_auth.export_type == "system"
        and scope.scope_type == ScopeType.USER
        and scope.resource_type == "*"
        and scope.access_type in (AccessType.ALL, AccessType.READ)
        and "read"
        in get_valid_operations_for_scope_type_and_access_type(
            scope.scope_type, AccessType.READ, scope_rule
        )
    )
    return bulk_data_auth.operation in BULK_DATA_OPERATIONS and has_correct_scope


def is_scope_sufficient(
    scope: str,
    scope_rule: ScopeRule,
    req_operation: str,
    req_resource_type: str | None = None,
    bulk_data_auth: BulkDataAuth | None = None,
) -> bool:
    """
    Check whether a single raw scope string authorizes the request.

    Never raises for non-SMART scopes; they are simply not sufficient.
    """
    try:
        smart_scope = parse_scope(scope)
    except NotAScopeError:
        return False

    if bulk_data_auth is not None:
        return is_smart_scope_sufficient_for_bulk_data_access(bulk_data_auth, smart_scope, scope_rule)

    valid_operations = get_valid_operations_for_scope(
        smart_scope, scope_rule, req_operation, req_resource_type
    )
    return req_operation in valid_operations


def has_identity_claim_for_scope(
    scope: str,
    fhir_user_claim: Any = None,
    patient_context_claim: Any = None,
) -> bool:
    """
    Check that the claim a scope type depends on is present.

    "user/" scopes are checked against the fhirUser claim and "patient/"
    scopes against the patient launch context. Without that claim the scope
    cannot be tied to anyone, so it must not authorize anything.
    """
    if scope.startswith(f"{ScopeType.USER.value}/"):
        return bool(fhir_user_claim)
    if scope.startswith(f"{ScopeType.PATIENT.value}/"):
        return bool(patient_context_claim)
    return True


def filter_out_unusable_scope(
    scopes: list[str],
    scope_rule: ScopeRule,
    req_operation: str,
    req_resource_type: str | None = None,
    bulk_data_auth: BulkDataAuth | None = None,
    patient_context_claim: Any = None,
    fhir_user_claim: Any = None,
) -> list[str]:
    """
    Keep only the scopes that are usable for the request, in order.

    A scope is usable when it is sufficient for the request and the identity
    claim its scope type needs is present (see has_identity_claim_for_scope).
    """
    return [
        scope
        for scope in scopes
        if has_identity_claim_for_scope(scope, fhir_user_claim, patient_context_claim)
        and is_scope_sufficient(scope, scope_rule, req_operation, req_resource_type, bulk_data_auth)
    ]


def usable_scope_types(scopes: list[str]) -> set[ScopeType]:
    """Clinical scope types present among already-filtered usable scopes."""
    scope_types: set[ScopeType] = set()
    for scope in scopes:
        try:
            scope_types.add(parse_clinical_scope(scope).scope_type)
        except NotAScopeError:
            continue
    return scope_types
