"""
Tests for the scope grammar and the permission resolver.

The resolver is tested against the rule table from conftest: patient scopes
may read everything and create/update/patch, user scopes may only read, system
scopes may do everything, and every launch scope grants the read operations.
"""

import pytest

from smart_authz.config import ALL_READ_OPERATIONS, AccessRule, ScopeRule
from smart_authz.errors import NotAScopeError
from smart_authz.scopes import (
    filter_out_unusable_scope,
    get_scopes,
    get_valid_operations_for_launch_scope,
    get_valid_operations_for_scope,
    get_valid_operations_for_scope_type_and_access_type,
    has_identity_claim_for_scope,
    is_scope_sufficient,
    is_smart_scope_sufficient_for_bulk_data_access,
    parse_clinical_scope,
    parse_scope,
    usable_scope_types,
)
from smart_authz.types import (
    AccessType,
    BulkDataAuth,
    ClinicalScope,
    LaunchScope,
    LaunchType,
    ScopeType,
)


class TestScopeGrammar:
    """Tests for parse_clinical_scope and parse_scope."""

    @pytest.mark.parametrize(
        "scope",
        [
            "patient/Observation.read",
            "user/Patient.write",
            "system/*.*",
            "patient/*.read",
            "user/MedicationRequest.*",
        ],
    )
    def test_valid_clinical_scopes_round_trip(self, scope):
        """A parsed clinical scope prints back to the exact input."""
        assert str(parse_clinical_scope(scope)) == scope

    def test_clinical_scope_fields(self):
        parsed = parse_clinical_scope("user/Observation.write")
        assert parsed == ClinicalScope(
            scope_type=ScopeType.USER,
            resource_type="Observation",
            access_type=AccessType.WRITE,
        )

    @pytest.mark.parametrize(
        "scope",
        [
            "openid",
            "profile",
            "fhirUser",
            "offline_access",
            "patient/observation.read",  # resource type must be capitalised
            "patient/O.read",  # at least two characters
            "patient/Obs3rvation.read",
            "admin/Patient.read",
            "patient/Patient.execute",
            "patient/Patient.read ",
            " patient/Patient.read",
            "patient/Patient.read.extra",
            "launch",
            "",
        ],
    )
    def test_non_clinical_scopes_rejected(self, scope):
        with pytest.raises(NotAScopeError):
            parse_clinical_scope(scope)

    def test_non_string_rejected(self):
        with pytest.raises(NotAScopeError):
            parse_clinical_scope(None)

    def test_not_a_scope_error_is_value_error(self):
        """Aggregating callers may catch it as a plain ValueError."""
        with pytest.raises(ValueError, match="openid"):
            parse_scope("openid")

    @pytest.mark.parametrize(
        "scope, launch_type",
        [
            ("launch", None),
            ("launch/patient", LaunchType.PATIENT),
            ("launch/encounter", LaunchType.ENCOUNTER),
        ],
    )
    def test_launch_scopes(self, scope, launch_type):
        parsed = parse_scope(scope)
        assert parsed == LaunchScope(launch_type=launch_type)
        assert str(parsed) == scope

    @pytest.mark.parametrize("scope", ["launch/", "launch/practitioner", "launch/patient/1", "launchpatient"])
    def test_invalid_launch_scopes(self, scope):
        with pytest.raises(NotAScopeError):
            parse_scope(scope)

    def test_parse_scope_falls_through_to_clinical(self):
        assert isinstance(parse_scope("patient/Patient.read"), ClinicalScope)


class TestGetScopes:
    """Tests for normalising the raw scope claim."""

    def test_array_claim(self):
        assert get_scopes(["launch", "patient/*.read"]) == ["launch", "patient/*.read"]

    def test_array_claim_drops_non_strings(self):
        assert get_scopes(["patient/*.read", 42, None]) == ["patient/*.read"]

    def test_space_claim(self):
        assert get_scopes("launch/patient  patient/*.read", "space") == ["launch/patient", "patient/*.read"]

    def test_wrong_shape_yields_no_scopes(self):
        assert get_scopes("patient/*.read", "array") == []
        assert get_scopes(["patient/*.read"], "space") == []

    def test_missing_claim(self):
        assert get_scopes(None) == []


class TestPermissionResolver:
    """Tests for the rule table lookups."""

    def test_read_access(self, scope_rule):
        ops = get_valid_operations_for_scope_type_and_access_type(ScopeType.PATIENT, AccessType.READ, scope_rule)
        assert ops == ALL_READ_OPERATIONS

    def test_write_access(self, scope_rule):
        ops = get_valid_operations_for_scope_type_and_access_type(ScopeType.PATIENT, AccessType.WRITE, scope_rule)
        assert ops == ["update", "patch", "create"]

    def test_all_access_is_read_then_write(self, scope_rule):
        ops = get_valid_operations_for_scope_type_and_access_type(ScopeType.PATIENT, AccessType.ALL, scope_rule)
        assert ops == ALL_READ_OPERATIONS + ["update", "patch", "create"]

    def test_empty_write_rule(self, scope_rule):
        ops = get_valid_operations_for_scope_type_and_access_type(ScopeType.USER, AccessType.WRITE, scope_rule)
        assert ops == []

    def test_launch_scope_uses_sub_type_key(self):
        rule = ScopeRule(launch={"launch": ["read"], "patient": ["search-type"]})
        assert get_valid_operations_for_launch_scope(LaunchScope(), rule) == ["read"]
        assert get_valid_operations_for_launch_scope(LaunchScope(LaunchType.PATIENT), rule) == ["search-type"]
        assert get_valid_operations_for_launch_scope(LaunchScope(LaunchType.ENCOUNTER), rule) == []

    def test_launch_scope_without_launch_rule(self):
        assert get_valid_operations_for_launch_scope(LaunchScope(), ScopeRule()) == []

    def test_resource_type_mismatch(self, scope_rule):
        scope = parse_clinical_scope("patient/Observation.read")
        assert get_valid_operations_for_scope(scope, scope_rule, "read", "Patient") == []

    def test_wildcard_resource_type(self, scope_rule):
        scope = parse_clinical_scope("patient/*.read")
        assert "read" in get_valid_operations_for_scope(scope, scope_rule, "read", "Patient")

    def test_system_search_needs_wildcard(self, scope_rule):
        specific = parse_clinical_scope("user/Patient.read")
        wildcard = parse_clinical_scope("user/*.read")
        assert get_valid_operations_for_scope(specific, scope_rule, "search-system") == []
        assert "search-system" in get_valid_operations_for_scope(wildcard, scope_rule, "search-system")

    def test_bundle_operations_without_resource_type(self, scope_rule):
        scope = parse_clinical_scope("system/Patient.write")
        assert "transaction" in get_valid_operations_for_scope(scope, scope_rule, "transaction")

    def test_other_operation_without_resource_type(self, scope_rule):
        scope = parse_clinical_scope("patient/*.read")
        assert get_valid_operations_for_scope(scope, scope_rule, "read") == []


class TestIsScopeSufficient:
    """Tests for the single-scope decision."""

    @pytest.mark.parametrize(
        "scope, operation, resource_type, expected",
        [
            ("patient/Patient.read", "read", "Patient", True),
            ("patient/Patient.read", "read", "Observation", False),
            ("patient/Patient.read", "create", "Patient", False),
            ("patient/Patient.write", "create", "Patient", True),
            ("patient/Patient.write", "delete", "Patient", False),
            ("user/*.write", "create", "Patient", False),
            ("user/*.*", "read", "Observation", True),
            ("system/*.*", "delete", "Patient", True),
            ("launch/patient", "read", "Patient", True),
            ("launch/encounter", "create", "Patient", False),
            ("openid", "read", "Patient", False),
            ("profile", "search-type", "Patient", False),
        ],
    )
    def test_decisions(self, scope_rule, scope, operation, resource_type, expected):
        assert is_scope_sufficient(scope, scope_rule, operation, resource_type) is expected


class TestBulkDataScope:
    """Tests for the bulk data export scope check."""

    SYSTEM_EXPORT = BulkDataAuth(operation="initiate-export", export_type="system")

    @pytest.mark.parametrize("scope", ["user/*.read", "user/*.*"])
    def test_user_wildcard_read_allowed(self, scope_rule, scope):
        assert is_smart_scope_sufficient_for_bulk_data_access(
            self.SYSTEM_EXPORT, parse_scope(scope), scope_rule
        )

    @pytest.mark.parametrize(
        "scope",
        ["user/Patient.read", "user/*.write", "patient/*.read", "system/*.read", "launch"],
    )
    def test_other_scopes_denied(self, scope_rule, scope):
        assert not is_smart_scope_sufficient_for_bulk_data_access(
            self.SYSTEM_EXPORT, parse_scope(scope), scope_rule
        )

    @pytest.mark.parametrize("operation", ["get-status-export", "cancel-export"])
    def test_status_and_cancel(self, scope_rule, operation):
        bulk = BulkDataAuth(operation=operation, export_type="system")
        assert is_smart_scope_sufficient_for_bulk_data_access(bulk, parse_scope("user/*.read"), scope_rule)

    @pytest.mark.parametrize("export_type", ["patient", "group"])
    def test_only_system_export(self, scope_rule, export_type):
        bulk = BulkDataAuth(operation="initiate-export", export_type=export_type)
        assert not is_smart_scope_sufficient_for_bulk_data_access(bulk, parse_scope("user/*.read"), scope_rule)

    def test_unknown_operation(self, scope_rule):
        bulk = BulkDataAuth(operation="delete-export", export_type="system")
        assert not is_smart_scope_sufficient_for_bulk_data_access(bulk, parse_scope("user/*.read"), scope_rule)

    def test_read_must_be_in_user_rule(self):
        rule = ScopeRule(user=AccessRule(read=["search-type"]))
        assert not is_smart_scope_sufficient_for_bulk_data_access(
            self.SYSTEM_EXPORT, parse_scope("user/*.read"), rule
        )

    def test_is_scope_sufficient_routes_to_bulk_check(self, scope_rule):
        """With bulk data auth the requested operation and type are ignored."""
        assert is_scope_sufficient("user/*.read", scope_rule, "read", None, self.SYSTEM_EXPORT)
        assert not is_scope_sufficient("patient/*.read", scope_rule, "read", "Patient", self.SYSTEM_EXPORT)


class TestFilterOutUnusableScope:
    """Tests for the scope filter used by token verification."""

    FHIR_USER = "https://fhir.server.com/dev/Practitioner/1234"
    PATIENT_CONTEXT = "Patient/1234"

    def test_keeps_order_and_drops_unusable(self, scope_rule):
        scopes = ["openid", "user/Patient.read", "patient/Observation.read", "launch", "profile"]
        assert filter_out_unusable_scope(
            scopes, scope_rule, "read", "Patient", fhir_user_claim=self.FHIR_USER
        ) == [
            "user/Patient.read",
            "launch",
        ]

    def test_nothing_usable(self, scope_rule):
        assert filter_out_unusable_scope(["openid", "profile"], scope_rule, "read", "Patient") == []

    def test_user_scope_needs_fhir_user(self, scope_rule):
        scopes = ["user/*.read", "launch"]
        assert filter_out_unusable_scope(scopes, scope_rule, "read", "Patient") == ["launch"]

    def test_patient_scope_needs_launch_context(self, scope_rule):
        scopes = ["patient/*.read", "user/*.read"]
        assert filter_out_unusable_scope(
            scopes, scope_rule, "read", "Patient", fhir_user_claim=self.FHIR_USER
        ) == ["user/*.read"]

    def test_claims_do_not_cross_scope_types(self, scope_rule):
        """A launch patient does not make a user/ scope usable, nor the reverse."""
        assert filter_out_unusable_scope(
            ["user/*.read"], scope_rule, "read", "Patient", patient_context_claim=self.PATIENT_CONTEXT
        ) == []
        assert filter_out_unusable_scope(
            ["patient/*.read"], scope_rule, "read", "Patient", fhir_user_claim=self.FHIR_USER
        ) == []

    def test_both_claims_present(self, scope_rule):
        scopes = ["patient/*.read", "user/*.read"]
        assert filter_out_unusable_scope(
            scopes,
            scope_rule,
            "read",
            "Patient",
            patient_context_claim=self.PATIENT_CONTEXT,
            fhir_user_claim=self.FHIR_USER,
        ) == scopes

    def test_system_scope_needs_no_claim(self, scope_rule):
        assert filter_out_unusable_scope(["system/*.*"], scope_rule, "read", "Patient") == ["system/*.*"]

    @pytest.mark.parametrize(
        "scope, fhir_user_claim, patient_context_claim, expected",
        [
            ("user/*.read", "x", None, True),
            ("user/*.read", "", "x", False),
            ("patient/*.read", None, "x", True),
            ("patient/*.read", "x", None, False),
            ("system/*.read", None, None, True),
            ("launch/patient", None, None, True),
            ("openid", None, None, True),
        ],
    )
    def test_has_identity_claim_for_scope(self, scope, fhir_user_claim, patient_context_claim, expected):
        assert has_identity_claim_for_scope(scope, fhir_user_claim, patient_context_claim) is expected

    def test_usable_scope_types(self):
        scopes = ["launch/patient", "patient/*.read", "user/Patient.read", "openid"]
        assert usable_scope_types(scopes) == {ScopeType.PATIENT, ScopeType.USER}
