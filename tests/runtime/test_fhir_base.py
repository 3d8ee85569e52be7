"""Tests for the model-level rules of the generated runtime."""

from typing import List, Optional

import pytest
from pydantic import ValidationError

from fhirgen.runtime.fhir_base import FhirModel, Slice, SlicingRule

LOINC = "http://loinc.org"


def code_slicing(rules="open", ordered=False):
    return (SlicingRule(
        field_name="item",
        discriminators=(("value", "code"),),
        rules=rules,
        ordered=ordered,
        slices=(
            Slice("first", values=(("code", "fixed", "a"),)),
            Slice("second", values=(("code", "fixed", "b"),)),
        ),
    ),)


def items(*codes):
    return {"item": [{"code": code} for code in codes]}


class Item(FhirModel):
    code: Optional[str] = None


class Holder(FhirModel):
    item: Optional[List[Item]] = None


class OrderedHolder(Holder):
    fhir_slicing = code_slicing(ordered=True)


class OpenAtEndHolder(Holder):
    fhir_slicing = code_slicing(rules="openAtEnd")


class Coding(FhirModel):
    system: Optional[str] = None
    code: Optional[str] = None


class Concept(FhirModel):
    coding: Optional[List[Coding]] = None


class FixedSystem(FhirModel):
    code: Optional[Concept] = None

    fhir_fixed = {"code.coding.system": LOINC}


class PatternedCoding(FhirModel):
    code: Optional[Concept] = None

    fhir_patterns = {"code.coding": {"system": LOINC}}


class TestOrderedSlicing:
    """Test slices that must appear in declaration order."""

    def test_declared_order(self):
        holder = OrderedHolder.from_fhir(items("a", "b", "x"))
        assert [i.code for i in holder.item] == ["a", "b", "x"]

    def test_unsliced_items_between_slices(self):
        OrderedHolder.from_fhir(items("a", "x", "b"))

    def test_out_of_order(self):
        with pytest.raises(ValidationError) as exc_info:
            OrderedHolder.from_fhir(items("b", "a"))
        assert "slices of item are out of order" in str(exc_info.value)

    def test_unordered_rule_accepts_any_order(self):
        class UnorderedHolder(Holder):
            fhir_slicing = code_slicing()

        UnorderedHolder.from_fhir(items("b", "a"))


class TestOpenAtEndSlicing:
    """Test slicing that allows unsliced items only after the slices."""

    def test_unsliced_items_at_the_end(self):
        holder = OpenAtEndHolder.from_fhir(items("a", "b", "x", "y"))
        assert len(holder.item) == 4

    def test_unsliced_item_before_a_slice(self):
        with pytest.raises(ValidationError) as exc_info:
            OpenAtEndHolder.from_fhir(items("x", "a"))
        assert "item allows unsliced items only at the end" in str(exc_info.value)

    def test_only_unsliced_items(self):
        OpenAtEndHolder.from_fhir(items("x", "y"))


class TestNestedValues:
    """Test fixed and pattern values keyed by a path below a field."""

    def test_fixed_value_matches(self):
        model = FixedSystem.from_fhir({"code": {"coding": [{"system": LOINC, "code": "85354-9"}]}})
        assert model.code.coding[0].system == LOINC

    def test_fixed_value_checked_on_every_item(self):
        data = {"code": {"coding": [{"system": LOINC, "code": "85354-9"}, {"system": "http://snomed.info/sct"}]}}
        with pytest.raises(ValidationError) as exc_info:
            FixedSystem.from_fhir(data)
        assert "code.coding.system must be exactly 'http://loinc.org'" in str(exc_info.value)

    def test_absent_values_are_not_checked(self):
        FixedSystem.from_fhir({})
        FixedSystem.from_fhir({"code": {"coding": [{"code": "85354-9"}]}})

    def test_nested_pattern(self):
        PatternedCoding.from_fhir({"code": {"coding": [{"system": LOINC, "code": "8480-6"}]}})
        with pytest.raises(ValidationError) as exc_info:
            PatternedCoding.from_fhir({"code": {"coding": [{"system": "http://other.org", "code": "8480-6"}]}})
        assert "code.coding does not match the required pattern" in str(exc_info.value)
