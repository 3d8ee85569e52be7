"""Unit tests for TerminologyLowerer."""

import pytest

from fhirgen.domain.ir import ConceptMapTarget, ModuleKind, SealedModuleError
from fhirgen.domain.ports import ErrorKind
from fhirgen.domain.services.name_mapper import NameMapper
from fhirgen.domain.services.terminology_lowerer import TerminologyLowerer
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.spec_models import CodeSystem, ConceptMap, ValueSet

from spec_fixtures import (
    GENDER_CS,
    GENDER_MAP_URL,
    GENDER_VS,
    LANGUAGES_VS,
    OBSERVATION_STATUS_VS,
    V2_SEX_CS,
    code_system,
    concept,
    gender_concept_map,
    terminology,
    value_set,
)

EXAMPLE_CS = "http://example.org/fhir/CodeSystem/colour"
EXAMPLE_VS = "http://example.org/fhir/ValueSet/colour"


def split(resources):
    code_systems = [CodeSystem.model_validate(r) for r in resources if r["resourceType"] == "CodeSystem"]
    value_sets = [ValueSet.model_validate(r) for r in resources if r["resourceType"] == "ValueSet"]
    return code_systems, value_sets


def colours(content="complete"):
    return code_system(EXAMPLE_CS, "colour", "Colour", [
        concept("red", "Red"),
        concept("green", "Green"),
        concept("blue", "Blue"),
    ], content=content)


class TerminologyHarness:
    """Lower terminology resources with a fresh name mapper and resolver."""

    def __init__(self):
        self.resolver = TypeResolver()
        self.lowerer = TerminologyLowerer(NameMapper(), self.resolver)

    def run(self, resources, concept_maps=()):
        code_systems, value_sets = split(resources)
        maps = [ConceptMap.model_validate(c) for c in concept_maps]
        result = self.lowerer.lower(code_systems, value_sets, maps)
        assert result.is_success()
        return {module.module_id: module for module in result.value}, result.errors()


@pytest.fixture
def harness():
    return TerminologyHarness()


class TestClosedValueSets:
    """Test enumeration generation from complete code systems."""

    def test_gender_enum(self, harness):
        modules, _ = harness.run(terminology())
        module = modules["value_set_administrative_gender"]
        assert module.kind == ModuleKind.VALUE_SET
        assert module.sealed
        generated = module.enums[0]
        assert generated.enum_id == "AdministrativeGender"
        assert generated.closed
        assert generated.value_set == GENDER_VS
        assert [(m.name, m.code) for m in generated.members] == [
            ("Female", "female"), ("Male", "male"), ("Other", "other"), ("Unknown", "unknown"),
        ]
        assert all(m.system == GENDER_CS for m in generated.members)

    def test_member_names_and_deprecation(self, harness):
        modules, _ = harness.run(terminology())
        members = {m.code: m for m in modules["value_set_observation_status"].enums[0].members}
        assert members["entered-in-error"].name == "EnteredInError"
        assert members["cancelled"].deprecated
        assert not members["final"].deprecated
        assert members["final"].display == "Final"

    def test_closed_binding_registered(self, harness):
        harness.run(terminology())
        binding = harness.resolver.lookup_binding(OBSERVATION_STATUS_VS)
        assert binding.closed
        assert binding.enum_id == "ObservationStatus"
        assert harness.resolver.lookup_binding(f"{OBSERVATION_STATUS_VS}|5.0.0").closed

    def test_explicit_concepts_and_exclude(self, harness):
        resources = [
            colours(),
            value_set(EXAMPLE_VS, "colour", "Colour",
                      [{"system": EXAMPLE_CS}],
                      exclude=[{"system": EXAMPLE_CS, "concept": [{"code": "green"}]}]),
        ]
        modules, _ = harness.run(resources)
        assert [m.code for m in modules["value_set_colour"].enums[0].members] == ["blue", "red"]

    def test_imported_value_set(self, harness):
        primary = "http://example.org/fhir/ValueSet/primary"
        resources = [
            colours(),
            value_set(EXAMPLE_VS, "colour", "Colour", [{"system": EXAMPLE_CS}]),
            value_set(primary, "primary", "Primary", [{"valueSet": [EXAMPLE_VS]}]),
        ]
        modules, _ = harness.run(resources)
        assert [m.code for m in modules["value_set_primary"].enums[0].members] == ["blue", "green", "red"]

    def test_precomputed_expansion_wins(self, harness):
        expanded = value_set(EXAMPLE_VS, "colour", "Colour", [{"system": EXAMPLE_CS}])
        expanded["expansion"] = {
            "timestamp": "2023-03-26T00:00:00Z",
            "total": 1,
            "contains": [{"system": EXAMPLE_CS, "code": "red", "display": "Red"}],
        }
        modules, _ = harness.run([colours(), expanded])
        assert [m.code for m in modules["value_set_colour"].enums[0].members] == ["red"]


class TestOpenValueSets:
    """Test value sets that stay strings."""

    def test_unknown_system_is_open_with_warning(self, harness):
        modules, errors = harness.run(terminology())
        assert not any(m.canonical_url == LANGUAGES_VS for m in modules.values())
        assert harness.resolver.lookup_binding(LANGUAGES_VS).closed is False
        assert any("unknown code system" in e.message for e in errors)
        assert all(e.kind == ErrorKind.BINDING_RESOLUTION and not e.fatal for e in errors)

    def test_fragment_code_system_is_open(self, harness):
        modules, _ = harness.run([
            colours(content="fragment"),
            value_set(EXAMPLE_VS, "colour", "Colour", [{"system": EXAMPLE_CS}]),
        ])
        assert "value_set_colour" not in modules
        assert harness.resolver.enum_ref(EXAMPLE_VS) is None

    def test_filter_is_open(self, harness):
        modules, _ = harness.run([
            colours(),
            value_set(EXAMPLE_VS, "colour", "Colour", [{
                "system": EXAMPLE_CS,
                "filter": [{"property": "concept", "op": "is-a", "value": "red"}],
            }]),
        ])
        assert "value_set_colour" not in modules

    def test_empty_closed_value_set_is_open_without_warning(self, harness):
        modules, errors = harness.run([
            code_system(EXAMPLE_CS, "colour", "Colour", []),
            value_set(EXAMPLE_VS, "colour", "Colour", [{"system": EXAMPLE_CS}]),
        ])
        assert modules == {}
        assert errors == []
        assert harness.resolver.lookup_binding(EXAMPLE_VS).closed is False

    def test_self_import_is_open(self, harness):
        looping = value_set(EXAMPLE_VS, "colour", "Colour", [{"valueSet": [EXAMPLE_VS]}])
        modules, errors = harness.run([looping])
        assert modules == {}
        assert any("imports itself" in e.message for e in errors)


class TestConceptMaps:
    """Test concept map tables."""

    def test_table_entries(self, harness):
        modules, _ = harness.run(terminology(), concept_maps=[gender_concept_map()])
        module = modules["concept_map_gender_to_v2"]
        assert module.kind == ModuleKind.CONCEPT_MAP
        table = module.concept_maps[0]
        assert table.name == "GenderToV2"
        assert table.url == GENDER_MAP_URL
        assert [key for key, _ in table.entries] == [
            (GENDER_CS, "female"), (GENDER_CS, "male"), (GENDER_CS, "other"), (GENDER_CS, "unknown"),
        ]
        other = dict(table.entries)[(GENDER_CS, "other")]
        assert other == (
            ConceptMapTarget(system=V2_SEX_CS, code="A", relationship="wider", display="Ambiguous"),
            ConceptMapTarget(system=V2_SEX_CS, code="O", relationship="wider", display="Other"),
        )

    def test_sealed_modules_reject_mutation(self, harness):
        modules, _ = harness.run(terminology(), concept_maps=[gender_concept_map()])
        with pytest.raises(SealedModuleError):
            modules["concept_map_gender_to_v2"].module_id = "other"

    def test_sealed_enums_and_tables_reject_mutation(self, harness):
        modules, _ = harness.run(terminology(), concept_maps=[gender_concept_map()])
        gender = modules["value_set_administrative_gender"].enums[0]
        table = modules["concept_map_gender_to_v2"].concept_maps[0]

        assert isinstance(gender.members, tuple)
        assert isinstance(table.entries, tuple)
        with pytest.raises(SealedModuleError):
            gender.closed = False
        with pytest.raises(SealedModuleError):
            table.entries = ()
