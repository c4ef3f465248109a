"""
Resource identity parsing and reference matching.

Two grammars turn a reference string into a FhirResource:

- fhirUser (strict): the requester's own identity. Must be fully qualified and
  the resource type must be one of the actor types SMART allows:

      https://fhir.server.com/dev/Practitioner/1234

- resource reference (lenient): e.g. the patient launch context. The hostname
  prefix is optional (the server's own URL is substituted when absent) and any
  capitalised word is accepted as the resource type:

      Patient/1234
      https://other.server.com/r4/Organization/abc

The reference matcher answers "does this identity have a claim on this
resource?". It works on the serialized JSON text of the resource and looks for
the literal `"reference":"<value>"` substring instead of walking the document.
This is a known approximation: a resource embedding that exact text anywhere
will match. Keep it textual, since a structural lookup would change which
resources are authorized.
"""

import json
import re
from typing import Any

from smart_authz.errors import IdentityFormatError, ResourceFormatError
from smart_authz.types import FhirResource

FHIR_USER_REGEX = re.compile(
    r"^(?P<hostname>(http|https)://([A-Za-z0-9\-\\.:%$_]+/)+)"
    r"(?P<resourceType>Person|Practitioner|RelatedPerson|Patient)/(?P<id>[A-Za-z0-9\-.]+)$"
)
FHIR_RESOURCE_REGEX = re.compile(
    r"^((?P<hostname>(http|https)://([A-Za-z0-9\-\\.:%$_]+/)+))?"
    r"(?P<resourceType>[A-Z][a-zA-Z]+)/(?P<id>[A-Za-z0-9\-.]+)$"
)


def get_fhir_user(fhir_user_value: Any) -> FhirResource:
    """
    Parse the requester's fhirUser claim.

    Raises:
        IdentityFormatError: If the value is not a fully qualified reference
                             to a Person, Practitioner, RelatedPerson or Patient
    """
    match = FHIR_USER_REGEX.match(fhir_user_value) if isinstance(fhir_user_value, str) else None
    if match is None:
        raise IdentityFormatError("Requester's identity is in the incorrect format")
    return FhirResource(
        hostname=match.group("hostname"),
        resource_type=match.group("resourceType"),
        id=match.group("id"),
    )


def get_fhir_resource(resource_value: Any, default_hostname: str) -> FhirResource:
    """
    Parse a resource reference, defaulting the hostname when none is given.

    Raises:
        ResourceFormatError: If no `<ResourceType>/<id>` reference can be found
    """
    match = FHIR_RESOURCE_REGEX.match(resource_value) if isinstance(resource_value, str) else None
    if match is None:
        raise ResourceFormatError("Resource is in the incorrect format")
    return FhirResource(
        hostname=match.group("hostname") or default_hostname,
        resource_type=match.group("resourceType"),
        id=match.group("id"),
    )


def _is_requestor_referenced(references: list[str], source_resource: Any) -> bool:
    serialized = json.dumps(source_resource, separators=(",", ":"))
    return any(
        f'"reference":{json.dumps(reference)}' in serialized for reference in references
    )


def has_reference_to_resource(requestor: FhirResource, source_resource: Any, api_url: str) -> bool:
    """
    Decide whether `requestor` has a claim on `source_resource`.

    - External requestors (hostname differs from api_url) only match through a
      fully qualified reference; a short reference is ambiguous across servers.
    - Local Practitioners always match.
    - Otherwise the resource is the requestor itself (same type and id) or it
      references the requestor by short or fully qualified reference.
    """
    # External identity: only a fully qualified reference can point at it
    if requestor.hostname != api_url:
        return _is_requestor_referenced([requestor.reference], source_resource)

    # Local practitioners see every local resource
    if requestor.resource_type == "Practitioner":
        return True

    # The resource is the requestor itself
    if (
        isinstance(source_resource, dict)
        and source_resource.get("resourceType") == requestor.resource_type
        and source_resource.get("id") == requestor.id
    ):
        return True

    # Otherwise the resource must reference the requestor, short or qualified
    return _is_requestor_referenced(
        [requestor.short_reference, requestor.reference], source_resource
    )


def has_access_to_resource(
    fhir_user: FhirResource | None,
    patient_launch_context: FhirResource | None,
    source_resource: Any,
    api_url: str,
) -> bool:
    """OR the reference matcher over whichever identities are present."""
    return any(
        has_reference_to_resource(identity, source_resource, api_url)
        for identity in (fhir_user, patient_launch_context)
        if identity is not None
    )


def is_fhir_user_admin(fhir_user: FhirResource | None, admin_access_types: list[str], api_url: str) -> bool:
    """A local requestor whose resource type is in the admin set."""
    return (
        fhir_user is not None
        and fhir_user.hostname == api_url
        and fhir_user.resource_type in admin_access_types
    )
