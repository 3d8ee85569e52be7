"""Tests for the Result type and the error taxonomy."""

import pytest

from fhirgen.domain.ports import (
    BindingResolutionError,
    BundleKind,
    CardinalityError,
    CycleError,
    EmissionError,
    ErrorKind,
    LoadError,
    MissingSnapshotError,
    NameCollisionError,
    Result,
    SnapshotOrderError,
    TypeResolutionError,
    UnknownFieldError,
)


class TestResult:
    """Test Result construction."""

    def test_success(self):
        warning = TypeResolutionError(message="unknown type")
        result = Result.success_result(42, diagnostics=[warning])
        assert result.is_success()
        assert not result.is_failure()
        assert result.value == 42
        assert result.errors() == [warning]

    def test_failure_from_pipeline_error(self):
        error = LoadError(message="Malformed JSON", file="valuesets.json", entry_index=3)
        warning = UnknownFieldError(message="Unknown field 'x'", fatal=False)
        result = Result.failure_result(error, diagnostics=[warning])

        assert result.is_failure()
        assert result.value is None
        assert result.error == "Malformed JSON"
        assert result.error_type == "LoadError"
        assert result.error_details["file"] == "valuesets.json"
        assert result.error_details["entry_index"] == 3
        assert result.errors() == [error, warning]

    def test_failure_does_not_duplicate_diagnostic(self):
        error = EmissionError(message="boom")
        result = Result.failure_result(error, diagnostics=[error])
        assert result.errors() == [error]

    def test_failure_from_exception(self):
        result = Result.failure_result(ValueError("bad value"))
        assert result.error == "bad value"
        assert result.error_type == "ValueError"
        assert result.errors() == []

    def test_failure_from_string(self):
        result = Result.failure_result("nope", error_type="Custom", error_details={"a": 1})
        assert result.error_type == "Custom"
        assert result.error_details == {"a": 1}


class TestPipelineErrors:
    """Test error kinds and their default fatality."""

    @pytest.mark.parametrize("error_class, kind, fatal", [
        (LoadError, ErrorKind.LOAD, True),
        (UnknownFieldError, ErrorKind.UNKNOWN_FIELD, True),
        (TypeResolutionError, ErrorKind.TYPE_RESOLUTION, False),
        (BindingResolutionError, ErrorKind.BINDING_RESOLUTION, False),
        (CardinalityError, ErrorKind.CARDINALITY, True),
        (CycleError, ErrorKind.CYCLE, True),
        (NameCollisionError, ErrorKind.NAME_COLLISION, True),
        (EmissionError, ErrorKind.EMISSION, True),
        (MissingSnapshotError, ErrorKind.MISSING_SNAPSHOT, False),
        (SnapshotOrderError, ErrorKind.SNAPSHOT_ORDER, False),
    ])
    def test_kind_and_fatality(self, error_class, kind, fatal):
        error = error_class(message="m")
        assert error.kind == kind
        assert error.fatal is fatal

    def test_describe(self):
        error = CardinalityError(
            message="min > max",
            file="profiles-types.json",
            full_url="http://hl7.org/fhir/StructureDefinition/Broken",
            element_path="Broken.count",
        )
        assert error.describe() == (
            "CardinalityError: min > max [profiles-types.json | "
            "http://hl7.org/fhir/StructureDefinition/Broken | Broken.count]"
        )

    def test_describe_without_location(self):
        assert EmissionError(message="boom").describe() == "EmissionError: boom"

    def test_cycle_participants_in_dict(self):
        error = CycleError(message="cycle", participants=("a", "b"))
        data = error.to_dict()
        assert data["kind"] == "CycleError"
        assert data["participants"] == ["a", "b"]
        assert data["fatal"] is True

    def test_errors_are_values(self):
        assert LoadError(message="x", file="f") == LoadError(message="x", file="f")


class TestBundleKind:
    """Test bundle file conventions."""

    def test_required(self):
        assert BundleKind.PROFILES_TYPES.required
        assert BundleKind.VALUESETS.required
        assert not BundleKind.CONCEPTMAPS.required

    def test_from_filename(self):
        assert BundleKind.from_filename("search-parameters.json") == BundleKind.SEARCH_PARAMETERS
        assert BundleKind.from_filename("notes.json") is None
