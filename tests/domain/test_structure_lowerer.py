"""Unit tests for StructureLowerer."""

import pytest

from fhirgen.domain.ir import FieldShape, ModuleKind, TypeKind
from fhirgen.domain.ports import ErrorKind
from fhirgen.domain.services.name_mapper import NameMapper
from fhirgen.domain.services.structure_lowerer import StructureLowerer, structure_key, structure_name
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.spec_models import StructureDefinition

from spec_fixtures import SD, complex_types, element, primitive_types, structure


@pytest.fixture
def lowerer():
    """A StructureLowerer with the test primitives and data types declared."""
    structures = StructureLowerer(NameMapper(), TypeResolver())
    for data in primitive_types():
        assert structures.declare_primitive(StructureDefinition.model_validate(data)) is None
    for data in complex_types():
        structures.declare(StructureDefinition.model_validate(data))
    return structures


def thing(*elements, **kwargs) -> StructureDefinition:
    return StructureDefinition.model_validate(
        structure("Thing", "complex-type", [element("Thing", "0..*")] + list(elements), base="Element", **kwargs)
    )


class TestStructureLowererDeclaration:
    """Test declaration and scheduling keys."""

    def test_declare_returns_identifiers(self, lowerer):
        assert lowerer.declare(thing()) == ("thing", "Thing")
        assert lowerer.resolver.lookup("Thing").url == f"{SD}Thing"

    def test_unknown_primitive_falls_back_to_string(self, lowerer):
        odd = StructureDefinition.model_validate(
            structure("xmlBlob", "primitive-type", [element("xmlBlob", "0..*")], base="Element")
        )
        warning = lowerer.declare_primitive(odd)
        assert warning.kind == ErrorKind.TYPE_RESOLUTION
        assert not warning.fatal
        assert lowerer.resolver.lookup("xmlBlob").primitive.value == "string"

    def test_dependencies(self, lowerer):
        definition = thing(
            element("Thing.part", "0..*", ["BackboneElement"]),
            element("Thing.part.name", "0..1", ["string"]),
        )
        assert lowerer.dependencies(definition) == {f"{SD}Element", f"{SD}BackboneElement"}

    def test_keys_and_names(self):
        definition = thing()
        assert structure_key(definition) == f"{SD}Thing"
        assert structure_name(definition) == "Thing"


class TestStructureLowererLowering:
    """Test lowering single structures."""

    def test_lowers_fields_and_module(self, lowerer):
        definition = thing(
            element("Thing.label", "1..1", ["string"]),
            element("Thing.tags", "0..*", ["code"]),
        )
        lowerer.declare(definition)
        result = lowerer.lower(definition, source_file="profiles-types.json")

        assert result.is_success()
        module = result.value
        assert module.module_id == "thing"
        assert module.kind == ModuleKind.STRUCTURE
        assert module.source_file == "profiles-types.json"
        root = module.root_type
        assert root.kind == TypeKind.COMPLEX
        assert root.parent.type_id == "Element"
        assert [(f.name, f.shape) for f in root.fields] == [
            ("label", FieldShape.SCALAR),
            ("tags", FieldShape.SEQUENCE),
        ]

    def test_fixed_count_adds_invariant(self, lowerer):
        definition = thing(element("Thing.pair", "2..2", ["string"]))
        module = lowerer.lower(definition).value
        pair = module.root_type.field_by_wire("pair")
        assert (pair.min_items, pair.max_items) == (2, 2)
        invariant = module.root_type.invariants[0]
        assert invariant.key == "pair-count"
        assert invariant.expression == "pair.count() = 2"

    def test_prohibited_element_and_children_are_skipped(self, lowerer):
        definition = thing(
            element("Thing.gone", "0..0", ["BackboneElement"]),
            element("Thing.gone.name", "0..1", ["string"]),
            element("Thing.kept", "0..1", ["string"]),
        )
        module = lowerer.lower(definition).value
        assert [f.wire_name for f in module.root_type.fields] == ["kept"]
        assert len(module.types) == 1

    def test_constraints_on_complex_children_are_not_backbones(self, lowerer):
        definition = thing(
            element("Thing.amount", "0..1", ["Quantity"]),
            element("Thing.amount.value", "1..1", ["decimal"]),
        )
        module = lowerer.lower(definition).value
        assert [f.wire_name for f in module.root_type.fields] == ["amount"]
        assert len(module.types) == 1

    def test_unknown_type_stays_pending_until_finalized(self, lowerer):
        definition = thing(element("Thing.cost", "0..1", ["Money"]))
        pending = lowerer.lower(definition).value
        assert pending.pending_codes() == ["Money"]

        final = lowerer.lower(definition, finalize_pending=True)
        assert final.value.pending_codes() == []
        assert [e.kind for e in final.errors()] == [ErrorKind.TYPE_RESOLUTION]
        assert final.errors()[0].element_path == "Thing.cost"

    def test_untyped_element_is_opaque_with_warning(self, lowerer):
        definition = thing(element("Thing.blob", "0..1"))
        result = lowerer.lower(definition)
        assert result.is_success()
        assert "declares no type" in result.errors()[0].message


class TestStructureLowererFailures:
    """Test per-structure failures."""

    def test_missing_snapshot(self, lowerer):
        data = structure("Thing", "complex-type", [], base="Element")
        del data["snapshot"]
        result = lowerer.lower(StructureDefinition.model_validate(data), source_file="profiles-types.json")
        assert result.is_failure()
        assert result.error_type == "MissingSnapshotError"
        assert not result.errors()[0].fatal

    def test_cardinality_error(self, lowerer):
        result = lowerer.lower(thing(element("Thing.count", "2..1", ["integer"])))
        assert result.is_failure()
        assert result.error_type == "CardinalityError"
        assert result.error_details["element_path"] == "Thing.count"
        assert result.errors()[0].fatal

    def test_snapshot_order_error(self, lowerer):
        result = lowerer.lower(thing(
            element("Thing.part.name", "0..1", ["string"]),
            element("Thing.part", "0..*", ["BackboneElement"]),
        ))
        assert result.is_failure()
        assert result.error_type == "SnapshotOrderError"
        assert result.error_details["element_path"] == "Thing.part.name"

    def test_name_budget_exhausted(self):
        structures = StructureLowerer(NameMapper(suffix_budget=1), TypeResolver())
        for index in range(3):
            structures.declare(StructureDefinition.model_validate(
                structure("Widget", "complex-type", [element("Widget")], url=f"http://example.org/w{index}")
            ))
        result = structures.lower(StructureDefinition.model_validate(
            structure("Widget", "complex-type", [element("Widget")], url="http://example.org/w3")
        ))
        assert result.is_failure()
        assert result.error_type == "NameCollisionError"
