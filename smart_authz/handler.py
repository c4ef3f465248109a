"""
SMARTHandler: the authorization decisions a FHIR server needs.

The handler composes the scope parser, the permission resolver, the identity
parser and the reference matcher into seven decisions:

    verify_access_token                      who is calling, and may they try this at all?
    is_access_bulk_data_job_allowed          does this export job belong to the caller?
    get_search_filter_based_on_identity      constrain a search to the caller's own data
    is_bundle_request_authorized             every entry of a batch/transaction allowed?
    get_allowed_resource_types_for_operation which resource types are visible?
    authorize_and_filter_read_response       drop / reject records the caller may not see
    is_write_request_authorized              may the caller write this resource?

The handler only holds immutable configuration, so one instance can serve any
number of concurrent requests. Every decision works on request-scoped input.
The only suspension point is the token verifier call in verify_access_token.

Rejections raise UnauthorizedError (or a subclass) and are logged as
structured JSON with a decision and a reason.
"""

import asyncio
from typing import Any

from smart_authz.auth import (
    GENERIC_TOKEN_ERROR,
    TokenVerifier,
    UserInfoClient,
    decode_access_token,
    get_claim,
)
from smart_authz.config import Settings, SMARTConfig
from smart_authz.errors import (
    AuthError,
    ConfigurationError,
    InsufficientPermissionError,
    InvalidTokenError,
    NotAScopeError,
    UnauthorizedError,
)
from smart_authz.identity import (
    get_fhir_resource,
    get_fhir_user,
    has_access_to_resource,
    is_fhir_user_admin,
)
from smart_authz.log import get_logger
from smart_authz.resources import RESOURCES_BY_FHIR_VERSION
from smart_authz.scopes import (
    filter_out_unusable_scope,
    get_scopes,
    get_valid_operations_for_scope_type_and_access_type,
    is_scope_sufficient,
    parse_clinical_scope,
    usable_scope_types,
)
from smart_authz.types import (
    SEARCH_OPERATIONS,
    WRITE_OPERATIONS,
    AccessBulkDataJobRequest,
    AllowedResourceTypesForOperationRequest,
    AuthorizationBundleRequest,
    GetSearchFilterBasedOnIdentityRequest,
    ReadResponseAuthorizedRequest,
    ScopeType,
    SearchFilter,
    UserIdentity,
    VerifyAccessTokenRequest,
    WriteRequestAuthorizedRequest,
)

logger = get_logger()

HANDLER_VERSION = 1.0


class SMARTHandler:
    """
    Scope-based authorization for a SMART-on-FHIR server.

    Args:
        config: Resolved configuration; its version must match HANDLER_VERSION
        api_url: Base URL of this FHIR server, with trailing "/". Identities
                 with another hostname are external.
        fhir_version: "4.0.1" or "3.0.1"; selects the base resource catalog
        admin_access_types: Local fhirUser types that may write without
                            meeting the reference criteria
        bulk_data_access_types: Local fhirUser types allowed to run bulk export
        token_verifier: Async callable returning authoritative claims for a
                        token. Defaults to the configured userinfo endpoint.

    Raises:
        ConfigurationError: On a version mismatch or an unsupported FHIR version
    """

    def __init__(
        self,
        config: SMARTConfig,
        api_url: str,
        fhir_version: str = "4.0.1",
        admin_access_types: tuple[str, ...] = ("Practitioner",),
        bulk_data_access_types: tuple[str, ...] = ("Practitioner",),
        token_verifier: TokenVerifier | None = None,
    ):
        if config.version != HANDLER_VERSION:
            raise ConfigurationError("Authorization configuration version does not match handler version")
        if fhir_version not in RESOURCES_BY_FHIR_VERSION:
            raise ConfigurationError(f"Unsupported FHIR version: {fhir_version}")

        self.config = config
        self.api_url = api_url
        self.fhir_version = fhir_version
        self.admin_access_types = list(admin_access_types)
        self.bulk_data_access_types = list(bulk_data_access_types)
        self.token_verifier = token_verifier or UserInfoClient(
            config.user_info_endpoint, timeout=config.user_info_timeout
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SMARTHandler":
        return cls(settings.smart_config(), settings.api_url, settings.fhir_version, **kwargs)

    # -----------------------------------------------------------------------
    # 1. Token verification
    # -----------------------------------------------------------------------
    async def verify_access_token(self, request: VerifyAccessTokenRequest) -> UserIdentity:
        """
        Authenticate the caller and build the request's UserIdentity.

        Raises:
            InvalidTokenError: Token untrusted or unverifiable
            InsufficientPermissionError: No granted scope covers the request, or
                                         none has the identity claim it needs
            UnauthorizedError: Bulk export attempted by a non-admin identity
            IdentityFormatError / ResourceFormatError: Malformed identity claims
        """
        decoded_token = decode_access_token(
            request.access_token,
            self.config.expected_aud_value,
            self.config.expected_iss_value,
        )

        scopes = get_scopes(decoded_token.get(self.config.scope_key), self.config.scope_value_type)

        # Reject on the rule table alone before calling the identity provider
        if not any(
            is_scope_sufficient(
                scope,
                self.config.scope_rule,
                request.operation,
                request.resource_type,
                request.bulk_data_auth,
            )
            for scope in scopes
        ):
            self._deny_insufficient_scopes(request, scopes, "insufficient_scope")

        claims = await self._verify_with_identity_provider(request.access_token)
        fhir_user_claim = get_claim(claims, self.config.fhir_user_claim_path)
        patient_path = f"{self.config.launch_context_path_prefix}patient"
        patient_context_claim = get_claim(claims, patient_path) or get_claim(decoded_token, patient_path)

        # user/ and patient/ scopes only count when their identity claim is present
        usable_scopes = filter_out_unusable_scope(
            scopes,
            self.config.scope_rule,
            request.operation,
            request.resource_type,
            request.bulk_data_auth,
            patient_context_claim=patient_context_claim,
            fhir_user_claim=fhir_user_claim,
        )
        if not usable_scopes:
            self._deny_insufficient_scopes(request, scopes, "identity_claim_missing")

        if request.bulk_data_auth is not None:
            self._check_bulk_data_requestor(claims, fhir_user_claim)

        identity = self._build_user_identity(
            claims, scopes, usable_scopes, fhir_user_claim, patient_context_claim
        )
        logger.info(
            "Authentication successful",
            extra={
                "auth_data": {
                    "decision": "authenticated",
                    "subject": identity.sub,
                    "operation": request.operation,
                    "resource_type": request.resource_type,
                    "usable_scopes": usable_scopes,
                }
            },
        )
        return identity

    def _deny_insufficient_scopes(self, request: VerifyAccessTokenRequest, scopes: list[str], reason: str) -> None:
        logger.warning(
            "User supplied scopes are insufficient",
            extra={
                "auth_data": {
                    "decision": "denied",
                    "reason": reason,
                    "operation": request.operation,
                    "resource_type": request.resource_type,
                    "scopes": scopes,
                }
            },
        )
        raise InsufficientPermissionError("access_token does not have permission for requested operation")

    async def _verify_with_identity_provider(self, access_token: str) -> dict[str, Any]:
        try:
            claims = await self.token_verifier(access_token)
        except AuthError:
            raise
        except Exception as e:
            logger.error(
                "Token verifier failed",
                extra={"auth_data": {"decision": "rejected", "reason": type(e).__name__}},
            )
            raise InvalidTokenError(GENERIC_TOKEN_ERROR) from e
        if not isinstance(claims, dict) or not claims:
            raise InvalidTokenError(GENERIC_TOKEN_ERROR)
        return claims

    def _check_bulk_data_requestor(self, claims: dict[str, Any], fhir_user_claim: Any) -> None:
        # Bulk export is restricted to local admin-type requestors regardless of scope
        if not claims.get("sub"):
            logger.error("Bulk data request without a 'sub' claim")
            raise UnauthorizedError("User does not have permission for requested operation")
        fhir_user = get_fhir_user(fhir_user_claim)
        if fhir_user.hostname != self.api_url or fhir_user.resource_type not in self.bulk_data_access_types:
            logger.warning(
                "Bulk data request denied",
                extra={
                    "auth_data": {
                        "decision": "denied",
                        "reason": "bulk_data_requestor_not_allowed",
                        "fhir_user_type": fhir_user.resource_type,
                    }
                },
            )
            raise UnauthorizedError("User does not have permission for requested operation")

    def _build_user_identity(
        self,
        claims: dict[str, Any],
        scopes: list[str],
        usable_scopes: list[str],
        fhir_user_claim: Any,
        patient_context_claim: Any,
    ) -> UserIdentity:
        # Step 1: which identity attributes are backed by a usable scope
        granted_types = usable_scope_types(usable_scopes)

        # Step 2: populate only those attributes
        fhir_user_object = None
        if ScopeType.USER in granted_types and fhir_user_claim:
            fhir_user_object = get_fhir_user(fhir_user_claim)

        patient_launch_context = None
        if ScopeType.PATIENT in granted_types and patient_context_claim:
            patient_launch_context = get_fhir_resource(patient_context_claim, self.api_url)

        return UserIdentity(
            scopes=scopes,
            usable_scopes=usable_scopes,
            fhir_user_object=fhir_user_object,
            patient_launch_context=patient_launch_context,
            claims=dict(claims),
        )

    # -----------------------------------------------------------------------
    # 2. Bulk data job ownership
    # -----------------------------------------------------------------------
    async def is_access_bulk_data_job_allowed(self, request: AccessBulkDataJobRequest) -> None:
        if request.user_identity.sub != request.job_owner_id:
            raise UnauthorizedError("User does not have permission to access this Bulk Data Export job")

    # -----------------------------------------------------------------------
    # 3. Search filter
    # -----------------------------------------------------------------------
    async def get_search_filter_based_on_identity(
        self, request: GetSearchFilterBasedOnIdentityRequest
    ) -> list[SearchFilter]:
        """
        Restrict a search to resources that reference the caller.

        Practitioners are not restricted. Everyone else gets one OR filter on
        `_reference` listing their own references and those of the patient in
        context.
        """
        identity = request.user_identity
        fhir_user = identity.fhir_user_object
        if fhir_user is not None and fhir_user.resource_type == "Practitioner":
            return []

        references: list[str] = []
        for context in (fhir_user, identity.patient_launch_context):
            if context is None:
                continue
            if context.hostname == self.api_url:
                references.append(context.short_reference)
            references.append(context.reference)

        if not references:
            return []
        return [SearchFilter(key="_reference", value=list(dict.fromkeys(references)))]

    # -----------------------------------------------------------------------
    # 4. Bundles
    # -----------------------------------------------------------------------
    async def is_bundle_request_authorized(self, request: AuthorizationBundleRequest) -> None:
        identity = request.user_identity
        usable_scopes = [
            scope
            for scope in identity.scopes
            if (identity.patient_launch_context is not None and scope.startswith("patient/"))
            or (identity.fhir_user_object is not None and scope.startswith("user/"))
        ]

        for entry in request.requests:
            if not any(
                is_scope_sufficient(scope, self.config.scope_rule, entry.operation, entry.resource_type)
                for scope in usable_scopes
            ):
                logger.error(
                    "User supplied scopes are insufficient",
                    extra={
                        "auth_data": {
                            "decision": "denied",
                            "reason": "bundle_entry_not_authorized",
                            "usable_scopes": usable_scopes,
                            "operation": entry.operation,
                            "resource_type": entry.resource_type,
                        }
                    },
                )
                raise UnauthorizedError("An entry within the Bundle is not authorized")

        entry_identity = UserIdentity(
            scopes=identity.scopes,
            usable_scopes=usable_scopes,
            fhir_user_object=identity.fhir_user_object,
            patient_launch_context=identity.patient_launch_context,
            claims=identity.claims,
        )
        write_checks = [
            self.is_write_request_authorized(
                WriteRequestAuthorizedRequest(
                    user_identity=entry_identity,
                    operation=entry.operation,
                    resource_body=entry.resource,
                )
            )
            for entry in request.requests
            if entry.operation in WRITE_OPERATIONS
        ]
        try:
            await asyncio.gather(*write_checks)
        except UnauthorizedError as e:
            raise UnauthorizedError("An entry within the Bundle is not authorized") from e

    # -----------------------------------------------------------------------
    # 5. Allowed resource types
    # -----------------------------------------------------------------------
    async def get_allowed_resource_types_for_operation(
        self, request: AllowedResourceTypesForOperationRequest
    ) -> list[str]:
        all_resource_types = RESOURCES_BY_FHIR_VERSION[self.fhir_version]
        allowed_resources: list[str] = []

        for scope in request.user_identity.scopes:
            try:
                clinical_scope = parse_clinical_scope(scope)
            except NotAScopeError:
                # Launch scopes and non-SMART scopes ('openid', 'profile') grant no types
                continue

            valid_operations = get_valid_operations_for_scope_type_and_access_type(
                clinical_scope.scope_type, clinical_scope.access_type, self.config.scope_rule
            )
            if request.operation not in valid_operations:
                continue
            if clinical_scope.resource_type == "*":
                return list(all_resource_types)
            if clinical_scope.resource_type in all_resource_types:
                allowed_resources.append(clinical_scope.resource_type)

        return list(dict.fromkeys(allowed_resources))

    # -----------------------------------------------------------------------
    # 6. Read responses
    # -----------------------------------------------------------------------
    async def authorize_and_filter_read_response(self, request: ReadResponseAuthorizedRequest) -> Any:
        """
        Filter search/history bundles, or authorize a single resource.

        Bundles never fail: entries the caller has no claim on are dropped.
        A single resource the caller has no claim on raises UnauthorizedError.
        """
        identity = request.user_identity
        read_response = request.read_response

        if request.operation in SEARCH_OPERATIONS:
            original_entries = read_response.get("entry") or []
            entries = [
                entry
                for entry in original_entries
                if self._has_access(identity, entry.get("resource"))
            ]
            filtered = {**read_response, "entry": entries}
            total = read_response.get("total")
            if not total:
                filtered["total"] = len(entries)
            else:
                filtered["total"] = total - (len(original_entries) - len(entries))
            if len(entries) != len(original_entries):
                logger.info(
                    "Read response filtered by identity",
                    extra={
                        "auth_data": {
                            "decision": "filtered",
                            "operation": request.operation,
                            "total_entries": len(original_entries),
                            "authorized_entries": len(entries),
                        }
                    },
                )
            return filtered

        if self._has_access(identity, read_response):
            return read_response

        logger.warning(
            "Read denied: no claim on resource",
            extra={
                "auth_data": {
                    "decision": "denied",
                    "reason": "no_reference_to_requestor",
                    "operation": request.operation,
                    "resource_type": read_response.get("resourceType"),
                }
            },
        )
        raise UnauthorizedError("User does not have permission for requested resource")

    # -----------------------------------------------------------------------
    # 7. Writes
    # -----------------------------------------------------------------------
    async def is_write_request_authorized(self, request: WriteRequestAuthorizedRequest) -> None:
        identity = request.user_identity
        if is_fhir_user_admin(identity.fhir_user_object, self.admin_access_types, self.api_url):
            return
        if self._has_access(identity, request.resource_body):
            return

        logger.warning(
            "Write denied: no claim on resource",
            extra={
                "auth_data": {
                    "decision": "denied",
                    "reason": "no_reference_to_requestor",
                    "operation": request.operation,
                }
            },
        )
        raise UnauthorizedError("User does not have permission for requested operation")

    def _has_access(self, identity: UserIdentity, resource: Any) -> bool:
        return has_access_to_resource(
            identity.fhir_user_object, identity.patient_launch_context, resource, self.api_url
        )
