"""Runtime support for generated FHIR models.

This module is copied into every generated package as ``_base.py``. It
provides the base classes, primitive aliases and validation hooks the
generated modules rely on, and has no dependency on fhirgen itself.

Validation:
    - Field-level: primitive formats and cardinality through pydantic
    - Model-level (``check_fhir_rules``): choice groups, prohibited elements,
      fixed and pattern values (on a field or a path below it), slicing rules
    - FHIRPath invariants are carried verbatim as metadata, not evaluated

Serialization:
    - ``to_fhir()`` produces FHIR JSON: wire names, no nulls, no empty
      arrays or objects
    - ``parse_resource()`` dispatches on ``resourceType``
"""

import importlib
import json
import re
import typing
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, StrictInt, model_validator

__all__ = [
    "AnyResource", "Binding", "ChoiceGroup", "ConceptInfo", "ConceptMapping", "FhirEnum",
    "FhirModel", "FhirResource", "Invariant", "PRIMITIVE_TYPES", "SearchParameterInfo", "Slice",
    "SlicingRule", "parse_resource", "rebuild_models", "translate",
    "FhirBase64Binary", "FhirBoolean", "FhirCanonical", "FhirCode", "FhirDate", "FhirDateTime",
    "FhirDecimal", "FhirId", "FhirInstant", "FhirInteger", "FhirInteger64", "FhirMarkdown", "FhirOid",
    "FhirPositiveInt", "FhirString", "FhirTime", "FhirUnsignedInt", "FhirUri", "FhirUrl", "FhirUuid",
    "FhirXhtml",
]

_FULL_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_PARTIAL_DATE = re.compile(r"^\d{4}(-\d{2})?$")


# ============================================================================
# Primitive aliases
# ============================================================================

def _parse_date(value: Any) -> Any:
    """Full dates become ``date``; year and year-month stay strings."""
    if isinstance(value, str):
        if _FULL_DATE.match(value):
            return date.fromisoformat(value)
        if not _PARTIAL_DATE.match(value):
            raise ValueError(f"'{value}' is not a FHIR date")
    return value


def _parse_integer64(value: Any) -> Any:
    if isinstance(value, str) and value.lstrip("-").isdigit():
        return int(value)
    return value


FhirBoolean = bool
FhirInteger = Annotated[int, Field(ge=-2147483648, le=2147483647)]
FhirInteger64 = Annotated[
    int,
    BeforeValidator(_parse_integer64),
    PlainSerializer(lambda value: str(value), return_type=str, when_used="json"),
]
FhirDecimal = typing.Union[StrictInt, float]
FhirString = str
FhirCode = str
FhirId = Annotated[str, Field(pattern=r"^[A-Za-z0-9\-\.]{1,64}$")]
FhirUri = str
FhirUrl = str
FhirCanonical = str
FhirOid = str
FhirUuid = str
FhirBase64Binary = str
FhirInstant = str
FhirDateTime = str
FhirDate = Annotated[typing.Union[date, str], BeforeValidator(_parse_date)]
FhirTime = str
FhirMarkdown = str
FhirXhtml = str
FhirPositiveInt = Annotated[int, Field(ge=1)]
FhirUnsignedInt = Annotated[int, Field(ge=0)]

PRIMITIVE_TYPES: Dict[str, Any] = {
    "boolean": FhirBoolean,
    "integer": FhirInteger,
    "integer64": FhirInteger64,
    "decimal": FhirDecimal,
    "string": FhirString,
    "code": FhirCode,
    "id": FhirId,
    "uri": FhirUri,
    "url": FhirUrl,
    "canonical": FhirCanonical,
    "oid": FhirOid,
    "uuid": FhirUuid,
    "base64Binary": FhirBase64Binary,
    "instant": FhirInstant,
    "dateTime": FhirDateTime,
    "date": FhirDate,
    "time": FhirTime,
    "markdown": FhirMarkdown,
    "xhtml": FhirXhtml,
    "positiveInt": FhirPositiveInt,
    "unsignedInt": FhirUnsignedInt,
}


# ============================================================================
# Rule metadata
# ============================================================================

@dataclass(frozen=True)
class ChoiceGroup:
    """Fields realising one ``[x]`` element; at most one may be set."""
    name: str
    fields: Tuple[str, ...]
    required: bool = False


@dataclass(frozen=True)
class Slice:
    """One named slice; values are (relative path, kind, value)."""
    name: str
    min_items: int = 0
    max_items: Optional[int] = None
    values: Tuple[Tuple[str, str, Any], ...] = ()
    type_codes: Tuple[str, ...] = ()
    profiles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SlicingRule:
    field_name: str
    discriminators: Tuple[Tuple[str, str], ...]
    rules: str = "open"
    ordered: bool = False
    slices: Tuple[Slice, ...] = ()


@dataclass(frozen=True)
class Invariant:
    key: str
    severity: str
    human: str
    expression: Optional[str] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class Binding:
    field_name: str
    value_set: str
    strength: str
    enum: Optional[str] = None


@dataclass(frozen=True)
class ConceptInfo:
    code: str
    display: Optional[str] = None
    definition: Optional[str] = None
    system: Optional[str] = None
    deprecated: bool = False


@dataclass(frozen=True)
class ConceptMapping:
    system: Optional[str]
    code: Optional[str]
    relationship: str
    display: Optional[str] = None


@dataclass(frozen=True)
class SearchParameterInfo:
    code: str
    type: str
    expression: Optional[str] = None
    url: Optional[str] = None


def translate(table: Dict[Tuple[Optional[str], str], Tuple[ConceptMapping, ...]],
              system: Optional[str], code: str) -> Tuple[ConceptMapping, ...]:
    """Look up the targets of a source code; the system may be omitted."""
    if (system, code) in table:
        return table[(system, code)]
    if system is None:
        return tuple(target for (_, source), targets in sorted(table.items(), key=lambda i: (i[0][0] or "", i[0][1]))
                     if source == code for target in targets)
    return ()


# ============================================================================
# JSON helpers
# ============================================================================

def _prune(value: Any) -> Any:
    """Drop empty arrays and objects, recursively."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v not in ({}, [])}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def _json_value(value: Any) -> Any:
    if isinstance(value, FhirModel):
        return value.to_fhir()
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


def _pattern_matches(expected: Any, actual: Any) -> bool:
    """FHIR pattern semantics: every expected part must appear in the actual value."""
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return False
        return all(key in actual and _pattern_matches(part, actual[key]) for key, part in expected.items())
    if isinstance(expected, list):
        if not isinstance(actual, list):
            return False
        return all(any(_pattern_matches(part, candidate) for candidate in actual) for part in expected)
    return expected == actual


_FUNCTION_SEGMENT = re.compile(r"^(ofType|resolve|as)\(.*\)$")


def _normalize_path(path: str) -> str:
    segments = [s for s in path.split(".") if s and s != "$this" and not _FUNCTION_SEGMENT.match(s)]
    return ".".join(segments)


def _resolve_path(value: Any, path: str) -> List[Any]:
    """Collect the values at a dotted wire path, flattening arrays."""
    current = [value]
    for segment in [s for s in path.split(".") if s]:
        found = []
        for item in current:
            if isinstance(item, dict) and segment in item:
                child = item[segment]
                found.extend(child if isinstance(child, list) else [child])
        current = found
    return [v for v in current if v is not None]


def _constrained_values(model: "FhirModel", key: str, expected: Any) -> List[Any]:
    """Values a fixed or pattern rule applies to.

    ``key`` is a field name, optionally followed by a wire path below it
    (``code.coding.system``).
    """
    field_name, _, remainder = key.partition(".")
    value = getattr(model, field_name, None)
    if value is None:
        return []
    actual = _json_value(value)
    if remainder:
        items = actual if isinstance(actual, list) else [actual]
        return [found for item in items for found in _resolve_path(item, remainder)]
    return actual if isinstance(actual, list) and not isinstance(expected, list) else [actual]


# ============================================================================
# Base classes
# ============================================================================

class FhirModel(BaseModel):
    """Base class of every generated complex type and backbone element."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", protected_namespaces=())

    fhir_type_name: ClassVar[str] = ""
    fhir_url: ClassVar[Optional[str]] = None
    fhir_profile: ClassVar[Optional[str]] = None
    fhir_abstract: ClassVar[bool] = False
    fhir_choice_groups: ClassVar[Tuple[ChoiceGroup, ...]] = ()
    fhir_slicing: ClassVar[Tuple[SlicingRule, ...]] = ()
    fhir_fixed: ClassVar[Dict[str, Any]] = {}
    fhir_patterns: ClassVar[Dict[str, Any]] = {}
    fhir_bindings: ClassVar[Tuple[Binding, ...]] = ()
    fhir_invariants: ClassVar[Tuple[Invariant, ...]] = ()
    fhir_prohibited: ClassVar[Tuple[str, ...]] = ()

    def to_fhir(self) -> Dict[str, Any]:
        """Serialize to FHIR JSON (as a dict)."""
        return _prune(self.model_dump(mode="json", by_alias=True, exclude_none=True))

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_fhir(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_fhir(cls, data: Any):
        """Parse FHIR JSON (a dict or a JSON string)."""
        if isinstance(data, (str, bytes)):
            return cls.model_validate_json(data)
        return cls.model_validate(data)

    @model_validator(mode="after")
    def check_fhir_rules(self):
        cls = type(self)
        name = cls.__name__

        for group in cls.fhir_choice_groups:
            present = [f for f in group.fields if getattr(self, f, None) is not None]
            if len(present) > 1:
                raise ValueError(f"{name}: only one of {', '.join(present)} may be set for {group.name}[x]")
            if group.required and not present:
                raise ValueError(f"{name}: {group.name}[x] is required")

        for field_name in cls.fhir_prohibited:
            if getattr(self, field_name, None) not in (None, []):
                raise ValueError(f"{name}: {field_name} is not allowed")

        for field_name, expected in cls.fhir_fixed.items():
            if any(item != expected for item in _constrained_values(self, field_name, expected)):
                raise ValueError(f"{name}: {field_name} must be exactly {expected!r}")

        for field_name, expected in cls.fhir_patterns.items():
            if not all(_pattern_matches(expected, item) for item in _constrained_values(self, field_name, expected)):
                raise ValueError(f"{name}: {field_name} does not match the required pattern {expected!r}")

        for rule in cls.fhir_slicing:
            _check_slicing(name, rule, getattr(self, rule.field_name, None) or [])
        return self


def _slice_expectation(slice_: Slice, kind: str, path: str) -> Optional[Tuple[str, Any]]:
    """Find the constraint a slice places on a discriminator path."""
    for relative, value_kind, value in slice_.values:
        if kind == "exists":
            if value_kind == "exists" and relative == path:
                return value_kind, value
            continue
        if value_kind == "exists":
            continue
        if relative == path:
            return value_kind, value
        if path.startswith(relative + ".") or not relative:
            remainder = path[len(relative) + 1:] if relative else path
            nested = _resolve_path(value, remainder)
            if nested:
                return value_kind, nested[0]
    return None


def _matches_slice(item: Any, rule: SlicingRule, slice_: Slice) -> bool:
    checked = False
    for kind, raw_path in rule.discriminators:
        path = _normalize_path(raw_path)
        if kind in ("value", "pattern", "exists"):
            expectation = _slice_expectation(slice_, kind, path)
            if expectation is None:
                continue
            checked = True
            value_kind, expected = expectation
            found = _resolve_path(item, path) if path else [item]
            if value_kind == "exists":
                if bool(found) != bool(expected):
                    return False
            elif value_kind == "fixed":
                if not any(candidate == expected for candidate in found):
                    return False
            elif not any(_pattern_matches(expected, candidate) for candidate in found):
                return False
        elif kind == "type" and slice_.type_codes:
            target = _resolve_path(item, path) if path else [item]
            resource_types = {t.get("resourceType") for t in target if isinstance(t, dict)}
            if not resource_types:
                continue
            checked = True
            if not resource_types & set(slice_.type_codes):
                return False
    return checked


def _check_slicing(owner: str, rule: SlicingRule, items: Sequence[Any]) -> None:
    counts = {s.name: 0 for s in rule.slices}
    positions: List[Optional[int]] = []
    for item in items:
        data = _json_value(item)
        match = next((i for i, s in enumerate(rule.slices) if _matches_slice(data, rule, s)), None)
        positions.append(match)
        if match is not None:
            counts[rule.slices[match].name] += 1

    for slice_ in rule.slices:
        count = counts[slice_.name]
        if count < slice_.min_items:
            raise ValueError(
                f"{owner}: {rule.field_name} requires at least {slice_.min_items} '{slice_.name}' items, found {count}"
            )
        if slice_.max_items is not None and count > slice_.max_items:
            raise ValueError(
                f"{owner}: {rule.field_name} allows at most {slice_.max_items} '{slice_.name}' items, found {count}"
            )

    if rule.rules == "closed" and any(p is None for p in positions):
        raise ValueError(f"{owner}: {rule.field_name} is closed to items outside its slices")
    if rule.rules == "openAtEnd":
        seen_unmatched = False
        for position in positions:
            if position is None:
                seen_unmatched = True
            elif seen_unmatched:
                raise ValueError(f"{owner}: {rule.field_name} allows unsliced items only at the end")
    if rule.ordered:
        matched = [p for p in positions if p is not None]
        if matched != sorted(matched):
            raise ValueError(f"{owner}: slices of {rule.field_name} are out of order")


class FhirResource(FhirModel):
    """Base class of every generated resource."""

    resource_type: str = Field(..., alias="resourceType")

    @model_validator(mode="before")
    @classmethod
    def default_resource_type(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        expected = cls.fhir_type_name
        given = data.get("resourceType", data.get("resource_type"))
        if given is None and expected:
            return {"resourceType": expected, **data}
        if expected and given != expected and not cls.fhir_abstract:
            raise ValueError(f"resourceType '{given}' does not match {expected}")
        return data


class FhirEnum(str, Enum):
    """Base class of generated enumerations.

    Unknown codes do not fail: they produce a pseudo-member that keeps the
    code, so data round-trips. ``is_known`` tells the two apart.
    """

    @classmethod
    def _missing_(cls, value: Any):
        if not isinstance(value, str):
            return None
        pseudo = str.__new__(cls, value)
        pseudo._name_ = value
        pseudo._value_ = value
        return pseudo

    @property
    def is_known(self) -> bool:
        return type(self)._value2member_map_.get(self._value_) is self


# ============================================================================
# Resource dispatch
# ============================================================================

_RESOURCE_TYPES: Dict[str, Type[FhirResource]] = {}


def register_resource(model: Type[FhirResource]) -> None:
    _RESOURCE_TYPES[model.fhir_type_name] = model


def parse_resource(data: Any) -> FhirResource:
    """Parse any resource, choosing the class from ``resourceType``."""
    if isinstance(data, FhirResource):
        return data
    if isinstance(data, (str, bytes)):
        data = json.loads(data)
    if not isinstance(data, dict):
        raise ValueError("A FHIR resource must be a JSON object")
    resource_type = data.get("resourceType")
    model = _RESOURCE_TYPES.get(resource_type)
    if model is None:
        raise ValueError(f"Unknown resourceType {resource_type!r}")
    return model.model_validate(data)


def _serialize_resource(value: Any) -> Any:
    if isinstance(value, FhirModel):
        return value.to_fhir()
    return value


AnyResource = Annotated[Any, BeforeValidator(parse_resource), PlainSerializer(_serialize_resource)]


_TYPING_NAMES = {
    "Any": Any, "ClassVar": ClassVar, "Dict": Dict, "List": List, "Optional": Optional,
    "Tuple": Tuple, "Union": typing.Union, "Field": Field,
}


def rebuild_models(package: str, module_names: Sequence[str]) -> Dict[str, type]:
    """Import every generated module and resolve cross-module annotations.

    Generated modules refer to types of other modules by name only. Every
    generated class is published into every module's namespace, then each
    model is rebuilt and concrete resources are registered for dispatch.

    Returns:
        class name -> class for every generated model and enumeration
    """
    modules = [importlib.import_module(f"{package}.{name}") for name in module_names]
    generated: Dict[str, type] = {}
    for module in modules:
        for attribute, value in vars(module).items():
            if (isinstance(value, type) and issubclass(value, (FhirModel, FhirEnum))
                    and value.__module__ == module.__name__):
                generated[attribute] = value

    shared = {name: globals()[name] for name in __all__}
    shared.update(_TYPING_NAMES)
    shared.update(generated)
    for module in modules:
        namespace = vars(module)
        for attribute, value in shared.items():
            namespace.setdefault(attribute, value)

    for attribute in sorted(generated):
        model = generated[attribute]
        if not issubclass(model, FhirModel):
            continue
        model.model_rebuild(force=True)
        if issubclass(model, FhirResource) and not model.fhir_abstract and not model.fhir_profile:
            register_resource(model)
    return generated
