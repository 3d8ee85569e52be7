"""Tests for the pydantic emitter adapter."""

import pytest

from fhirgen import __version__
from fhirgen.adapters.emitters.pydantic_emitter import (
    GENERATED_MARKER,
    PydanticEmitter,
    docstring,
    primitive_alias,
)
from fhirgen.domain.ir import (
    FieldShape,
    GeneratedField,
    GeneratedModule,
    GeneratedType,
    GenerationIndex,
    ModuleKind,
    PendingRef,
    PrimitiveKind,
    PrimitiveRef,
    TypeKind,
)
from fhirgen.domain.ports import ErrorKind


@pytest.fixture
def emitted(lowered):
    """module_id -> emitted source for the test specification."""
    modules, _ = lowered
    index = GenerationIndex.build(list(modules.values()), "5.0.0")
    emitter = PydanticEmitter()
    sources = {}
    for module_id, module in modules.items():
        result = emitter.emit_module(module, index)
        assert result.is_success(), result.error
        sources[module_id] = result.value.content
    return sources


def loose_module(field_type, sealed=True):
    root = GeneratedType(type_id="Loose", fhir_name="Loose", kind=TypeKind.COMPLEX, path="Loose")
    root.add_field(GeneratedField(name="cost", wire_name="cost", shape=FieldShape.OPTIONAL,
                                  type_ref=field_type, path="Loose.cost"))
    module = GeneratedModule(module_id="loose", kind=ModuleKind.STRUCTURE, types=[root])
    return module.seal() if sealed else module


class TestEmitterHelpers:
    """Test small rendering helpers."""

    def test_primitive_alias(self):
        assert primitive_alias(PrimitiveRef(PrimitiveKind.DATE_TIME)) == "FhirDateTime"
        assert primitive_alias(PrimitiveRef(PrimitiveKind.STRING)) == "FhirString"

    def test_docstring_single_line(self):
        assert docstring("A patient.") == ['"""A patient."""']

    def test_docstring_escapes_quotes(self):
        rendered = "\n".join(docstring('Say """hi"""', "    "))
        assert '\\"\\"\\"hi' in rendered

    def test_empty_docstring(self):
        assert docstring("   ") == []


class TestEmitterStructures:
    """Test rendered structure modules."""

    def test_header(self, emitted):
        lines = emitted["patient"].splitlines()
        assert lines[0] == f"{GENERATED_MARKER} {__version__}. Do not edit."
        assert lines[1] == "# Canonical URL: http://hl7.org/fhir/StructureDefinition/Patient"
        assert lines[2] == "# Version: 5.0.0"
        assert lines[3] == "# FHIR version: 5.0.0"
        assert lines[4] == "# Specification: http://hl7.org/fhir/R5/patient.html"

    def test_class_inherits_parent_module(self, emitted):
        source = emitted["patient"]
        assert "from .domain_resource import DomainResource" in source
        assert "class Patient(DomainResource):" in source
        assert "class PatientContact(BackboneElement):" in source
        assert "fhir_type_name = 'Patient'" in source

    def test_field_with_alias_and_sidecar(self, emitted):
        source = emitted["patient"]
        assert "    birth_date: Optional[FhirDate] = Field(" in source
        assert "        alias='birthDate'," in source
        assert "    birth_date_ext: Optional[Element] = Field(" in source
        assert "        alias='_birthDate'," in source
        assert "        description='Extensions for birthDate'," in source

    def test_enum_import(self, emitted):
        assert "from .value_set_administrative_gender import AdministrativeGender" in emitted["patient"]

    def test_choice_groups(self, emitted):
        source = emitted["observation"]
        assert "ChoiceGroup('value', ('value_quantity', 'value_codeable_concept', 'value_string', " \
               "'value_boolean', 'value_integer'), required=False)," in source

    def test_profile_metadata(self, emitted):
        source = emitted["blood_pressure"]
        assert "class BloodPressure(Observation):" in source
        assert "fhir_profile = 'http://example.org/fhir/StructureDefinition/BloodPressure'" in source
        assert "fhir_choice_groups = ()" in source
        assert "fhir_prohibited = (" in source
        assert "Slice('systolic', min_items=1, max_items=1" in source
        assert "        'subject.type': 'Patient'," in source
        assert "# Specification: http://hl7.org/fhir/R5/BloodPressure.html" in source

    def test_invariants(self, emitted):
        assert "Invariant('obs-7', 'error'," in emitted["observation"]

    def test_abstract_resource_reference(self, emitted):
        assert "contained: Optional[List[AnyResource]] = Field(" in emitted["domain_resource"]

    def test_every_module_compiles(self, emitted):
        for module_id, source in emitted.items():
            compile(source, f"{module_id}.py", "exec")


class TestEmitterTerminology:
    """Test value set, concept map and search index modules."""

    def test_value_set_module(self, emitted):
        source = emitted["value_set_observation_status"]
        assert "VALUE_SET_URL = 'http://hl7.org/fhir/ValueSet/observation-status'" in source
        assert "CLOSED = True" in source
        assert "class ObservationStatus(FhirEnum):" in source
        assert "    EnteredInError = 'entered-in-error'" in source
        assert "    Cancelled = 'cancelled'  # deprecated" in source
        assert "# Specification: http://hl7.org/fhir/R5/valueset-observation-status.html" in source

    def test_concept_map_module(self, emitted):
        source = emitted["concept_map_gender_to_v2"]
        assert "SOURCE_URL = 'http://example.org/fhir/ConceptMap/gender-to-v2'" in source
        assert "def lookup(code: str, system: Optional[str] = None)" in source
        assert "ConceptMapping('http://terminology.hl7.org/CodeSystem/v2-0001', 'A', 'wider'" in source
        assert "conceptmap-gender-to-v2.html" in source

    def test_search_index_module(self, emitted):
        source = emitted["search_parameters"]
        assert "SEARCH_PARAMETERS: Dict[str, Tuple[SearchParameterInfo, ...]] = {" in source
        assert "SearchParameterInfo('gender', 'token', expression='Patient.gender'" in source
        assert "searchparameter-registry.html" in source


class TestEmitterSupportFiles:
    """Test _base.py and __init__.py."""

    def test_support_files(self, lowered):
        modules, _ = lowered
        index = GenerationIndex.build(list(modules.values()), "5.0.0")
        result = PydanticEmitter().emit_support_files(list(modules.values()), index)

        assert result.is_success()
        base, init = result.value
        assert base.path == "_base.py"
        assert init.path == "__init__.py"
        assert base.content.startswith(GENERATED_MARKER)
        assert "class FhirModel(BaseModel):" in base.content
        assert "FHIR_VERSION = '5.0.0'" in init.content
        assert "    'patient'," in init.content
        assert "MODELS = rebuild_models(__name__, GENERATED_MODULES)" in init.content
        compile(init.content, "__init__.py", "exec")
        compile(base.content, "_base.py", "exec")

    def test_custom_specification_base_url(self, lowered):
        modules, _ = lowered
        index = GenerationIndex.build(list(modules.values()), "5.0.0")
        emitter = PydanticEmitter(specification_base_url="https://build.fhir.org/", generator_version="9.9")
        content = emitter.emit_module(modules["patient"], index).value.content
        assert content.startswith(f"{GENERATED_MARKER} 9.9. Do not edit.")
        assert "# Specification: https://build.fhir.org/patient.html" in content


class TestEmitterPreconditions:
    """Test IR that must never reach emission."""

    def test_unsealed_module(self):
        module = loose_module(PrimitiveRef(PrimitiveKind.STRING), sealed=False)
        result = PydanticEmitter().emit_module(module, GenerationIndex.build([module]))
        assert result.is_failure()
        assert result.error_type == ErrorKind.EMISSION.value
        assert "is not sealed" in result.error

    def test_pending_reference(self):
        module = loose_module(PendingRef("Money"))
        result = PydanticEmitter().emit_module(module, GenerationIndex.build([module]))
        assert result.is_failure()
        assert "Unresolved type 'Money'" in result.error
        assert result.errors()[0].fatal

    def test_emission_is_deterministic(self, lowered):
        modules, _ = lowered
        index = GenerationIndex.build(list(modules.values()), "5.0.0")
        emitter = PydanticEmitter()
        first = emitter.emit_module(modules["observation"], index).value
        second = emitter.emit_module(modules["observation"], index).value
        assert first == second
