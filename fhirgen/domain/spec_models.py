"""Typed view of the FHIR specification bundles.

This module defines Pydantic models for the specification-side entities the
pipeline reads: StructureDefinition, ElementDefinition, ValueSet, CodeSystem,
ConceptMap and their companions. The models are a faithful reflection of the
JSON; they carry no semantic interpretation.

Strictness:
    - Every model keeps unmodelled keys in ``model_extra`` instead of dropping
      them, so the loader can report drift (strict mode) or log it
      (permissive mode)
    - Keys beginning with ``_`` are primitive extension sidecars and are
      always accepted
    - Polymorphic families (``fixed[x]``, ``pattern[x]`` ...) are collected
      into a ``TypedValue`` before validation

Architecture:
    - Domain layer: pure data models, no I/O
    - The JSON bundle loader adapter produces these models
    - The lowering services consume them
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from fhirgen.domain.ports import BundleKind

STRUCTURE_DEFINITION_FHIR_TYPE = "http://hl7.org/fhir/StructureDefinition/structuredefinition-fhir-type"
STANDARDS_STATUS = "http://hl7.org/fhir/StructureDefinition/structuredefinition-standards-status"


class SpecModel(BaseModel):
    """Base model for specification JSON structures.

    Field names are snake_case; the wire names are generated as camelCase
    aliases. Unknown keys are retained so they can be reported.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
        protected_namespaces=(),
    )

    # Whether unmodelled keys on this structure are reported in strict mode
    strict_fields: ClassVar[bool] = True
    # Polymorphic key prefixes accepted as modelled (e.g. "versionAlgorithm")
    choice_prefixes: ClassVar[Tuple[str, ...]] = ()

    def _is_modelled_key(self, key: str) -> bool:
        if key.startswith("_"):
            return True
        for prefix in self.choice_prefixes:
            if key.startswith(prefix) and len(key) > len(prefix) and key[len(prefix)].isupper():
                return True
        return False

    def unknown_fields(self, location: str) -> List[Tuple[str, str]]:
        """Collect unmodelled keys on this structure and every nested structure.

        Parameters:
            location: Dotted location of this structure (used in reports)

        Returns:
            List of (location, key) pairs, in document order of the model
        """
        found: List[Tuple[str, str]] = []
        if self.strict_fields:
            for key in (self.model_extra or {}):
                if not self._is_modelled_key(key):
                    found.append((location, key))

        for name, field_info in type(self).model_fields.items():
            value = getattr(self, name)
            wire = field_info.alias or name
            if isinstance(value, SpecModel):
                found.extend(value.unknown_fields(f"{location}.{wire}"))
            elif isinstance(value, list):
                for index, item in enumerate(value):
                    if isinstance(item, SpecModel):
                        found.extend(item.unknown_fields(f"{location}.{wire}[{index}]"))
        return found


@dataclass(frozen=True)
class TypedValue:
    """A value taken from a polymorphic ``[x]`` key.

    Attributes:
        suffix: The type suffix of the key (``Uri`` for ``fixedUri``)
        value: The raw JSON value
    """

    suffix: str
    value: Any

    def matches_code(self, code: str) -> bool:
        """Whether the suffix names the given FHIR type code."""
        return bool(code) and code[0].upper() + code[1:] == self.suffix


def extract_typed_value(data: Dict[str, Any], prefix: str) -> Optional[TypedValue]:
    """Pop the first ``<prefix><Type>`` key out of a raw JSON mapping."""
    for key in list(data.keys()):
        if key.startswith(prefix) and len(key) > len(prefix) and key[len(prefix)].isupper():
            return TypedValue(suffix=key[len(prefix):], value=data.pop(key))
    return None


# ============================================================================
# ElementDefinition
# ============================================================================

class ElementType(SpecModel):
    """ElementDefinition.type"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    code: Optional[str] = None
    profile: Optional[List[str]] = None
    target_profile: Optional[List[str]] = None
    aggregation: Optional[List[str]] = None
    versioning: Optional[str] = None

    def fhir_type_override(self) -> Optional[str]:
        """Return the type named by the structuredefinition-fhir-type extension."""
        for extension in self.extension or []:
            if isinstance(extension, dict) and extension.get("url") == STRUCTURE_DEFINITION_FHIR_TYPE:
                return extension.get("valueUrl") or extension.get("valueUri")
        return None


class ElementBase(SpecModel):
    """ElementDefinition.base"""
    path: Optional[str] = None
    min: Optional[int] = None
    max: Optional[str] = None


class Discriminator(SpecModel):
    """ElementDefinition.slicing.discriminator"""
    type: str
    path: str


class Slicing(SpecModel):
    """ElementDefinition.slicing"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    discriminator: List[Discriminator] = Field(default_factory=list)
    description: Optional[str] = None
    ordered: Optional[bool] = None
    rules: str = "open"


class Constraint(SpecModel):
    """ElementDefinition.constraint"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    key: str
    requirements: Optional[str] = None
    severity: Optional[str] = None
    suppress: Optional[bool] = None
    human: Optional[str] = None
    expression: Optional[str] = None
    source: Optional[str] = None


class Binding(SpecModel):
    """ElementDefinition.binding"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    strength: Optional[str] = None
    description: Optional[str] = None
    value_set: Optional[str] = None
    additional: Optional[List[Any]] = None


class ElementDefinition(SpecModel):
    """One row of a StructureDefinition element table."""

    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    modifier_extension: Optional[List[Any]] = None
    path: str
    representation: Optional[List[str]] = None
    slice_name: Optional[str] = None
    slice_is_constraining: Optional[bool] = None
    label: Optional[str] = None
    code: Optional[List[Any]] = None
    slicing: Optional[Slicing] = None
    short: Optional[str] = None
    definition: Optional[str] = None
    comment: Optional[str] = None
    requirements: Optional[str] = None
    alias: Optional[List[str]] = None
    min: Optional[Any] = None
    max: Optional[str] = None
    base: Optional[ElementBase] = None
    content_reference: Optional[str] = None
    type: Optional[List[ElementType]] = None
    meaning_when_missing: Optional[str] = None
    order_meaning: Optional[str] = None
    example: Optional[List[Any]] = None
    max_length: Optional[int] = None
    condition: Optional[List[str]] = None
    constraint: Optional[List[Constraint]] = None
    must_have_value: Optional[bool] = None
    value_alternatives: Optional[List[str]] = None
    must_support: Optional[bool] = None
    is_modifier: Optional[bool] = None
    is_modifier_reason: Optional[str] = None
    is_summary: Optional[bool] = None
    binding: Optional[Binding] = None
    mapping: Optional[List[Any]] = None

    # Collected polymorphic families
    fixed: Optional[TypedValue] = Field(None, exclude=True)
    pattern: Optional[TypedValue] = Field(None, exclude=True)
    default_value: Optional[TypedValue] = Field(None, exclude=True)
    min_value: Optional[TypedValue] = Field(None, exclude=True)
    max_value: Optional[TypedValue] = Field(None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def collect_polymorphic_values(cls, data: Any) -> Any:
        """Move fixed[x], pattern[x], defaultValue[x], minValue[x], maxValue[x] into TypedValues."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for prefix, target in (
            ("fixed", "fixed"),
            ("pattern", "pattern"),
            ("defaultValue", "default_value"),
            ("minValue", "min_value"),
            ("maxValue", "max_value"),
        ):
            typed = extract_typed_value(data, prefix)
            if typed is not None:
                data[target] = typed
        return data

    @property
    def element_id(self) -> str:
        return self.id or self.path

    @property
    def type_codes(self) -> List[str]:
        return [t.code for t in (self.type or []) if t.code]

    @property
    def is_choice(self) -> bool:
        return self.path.endswith("[x]")

    @property
    def in_slice(self) -> bool:
        """Whether the element is a slice or lies below one."""
        return ":" in self.element_id

    def standards_status(self) -> Optional[str]:
        for extension in self.extension or []:
            if isinstance(extension, dict) and extension.get("url") == STANDARDS_STATUS:
                return extension.get("valueCode")
        return None


class ElementList(SpecModel):
    """StructureDefinition.snapshot / StructureDefinition.differential"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    element: List[ElementDefinition] = Field(default_factory=list)


# ============================================================================
# Canonical resources
# ============================================================================

class CanonicalResource(SpecModel):
    """Fields shared by every canonical (conformance) resource."""

    choice_prefixes: ClassVar[Tuple[str, ...]] = ("versionAlgorithm",)

    resource_type: str
    id: Optional[str] = None
    meta: Optional[Any] = None
    implicit_rules: Optional[str] = None
    language: Optional[str] = None
    text: Optional[Any] = None
    contained: Optional[List[Any]] = None
    extension: Optional[List[Any]] = None
    modifier_extension: Optional[List[Any]] = None
    url: Optional[str] = None
    identifier: Optional[List[Any]] = None
    version: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    experimental: Optional[bool] = None
    date: Optional[str] = None
    publisher: Optional[str] = None
    contact: Optional[List[Any]] = None
    description: Optional[str] = None
    use_context: Optional[List[Any]] = None
    jurisdiction: Optional[List[Any]] = None
    purpose: Optional[str] = None
    copyright: Optional[str] = None
    copyright_label: Optional[str] = None
    approval_date: Optional[str] = None
    last_review_date: Optional[str] = None
    effective_period: Optional[Any] = None
    topic: Optional[List[Any]] = None
    author: Optional[List[Any]] = None
    editor: Optional[List[Any]] = None
    reviewer: Optional[List[Any]] = None
    endorser: Optional[List[Any]] = None
    related_artifact: Optional[List[Any]] = None

    def standards_status(self) -> Optional[str]:
        for extension in self.extension or []:
            if isinstance(extension, dict) and extension.get("url") == STANDARDS_STATUS:
                return extension.get("valueCode")
        return None


class StructureDefinition(CanonicalResource):
    """Definition of a FHIR primitive, complex type, resource or profile."""

    keyword: Optional[List[Any]] = None
    fhir_version: Optional[str] = None
    mapping: Optional[List[Any]] = None
    kind: str
    abstract: bool = False
    context: Optional[List[Any]] = None
    context_invariant: Optional[List[str]] = None
    type: str
    base_definition: Optional[str] = None
    derivation: Optional[str] = None
    snapshot: Optional[ElementList] = None
    differential: Optional[ElementList] = None

    @property
    def is_profile(self) -> bool:
        return self.derivation == "constraint"


class ValueSetConcept(SpecModel):
    """ValueSet.compose.include.concept"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    code: str
    display: Optional[str] = None
    designation: Optional[List[Any]] = None


class ValueSetInclude(SpecModel):
    """ValueSet.compose.include / ValueSet.compose.exclude"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    system: Optional[str] = None
    version: Optional[str] = None
    concept: Optional[List[ValueSetConcept]] = None
    filter: Optional[List[Any]] = None
    value_set: Optional[List[str]] = None
    copyright: Optional[str] = None


class ValueSetCompose(SpecModel):
    """ValueSet.compose"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    locked_date: Optional[str] = None
    inactive: Optional[bool] = None
    include: List[ValueSetInclude] = Field(default_factory=list)
    exclude: Optional[List[ValueSetInclude]] = None
    property: Optional[List[str]] = None


class ExpansionContains(SpecModel):
    """ValueSet.expansion.contains"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    system: Optional[str] = None
    abstract: Optional[bool] = None
    inactive: Optional[bool] = None
    version: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None
    designation: Optional[List[Any]] = None
    property: Optional[List[Any]] = None
    contains: Optional[List["ExpansionContains"]] = None


class ValueSetExpansion(SpecModel):
    """ValueSet.expansion"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    identifier: Optional[str] = None
    next: Optional[str] = None
    timestamp: Optional[str] = None
    total: Optional[int] = None
    offset: Optional[int] = None
    parameter: Optional[List[Any]] = None
    property: Optional[List[Any]] = None
    contains: Optional[List[ExpansionContains]] = None


class ValueSet(CanonicalResource):
    """A set of codes drawn from one or more code systems."""
    immutable: Optional[bool] = None
    compose: Optional[ValueSetCompose] = None
    expansion: Optional[ValueSetExpansion] = None
    scope: Optional[Any] = None


class CodeSystemConcept(SpecModel):
    """CodeSystem.concept (recursive)"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    code: str
    display: Optional[str] = None
    definition: Optional[str] = None
    designation: Optional[List[Any]] = None
    property: Optional[List[Any]] = None
    concept: Optional[List["CodeSystemConcept"]] = None

    def is_deprecated(self) -> bool:
        for prop in self.property or []:
            if not isinstance(prop, dict):
                continue
            if prop.get("code") == "status" and prop.get("valueCode") in ("deprecated", "retired"):
                return True
            if prop.get("code") == "deprecated" and (prop.get("valueBoolean") or prop.get("valueDateTime")):
                return True
        return False


class CodeSystem(CanonicalResource):
    """A code system and its (possibly nested) concepts."""
    case_sensitive: Optional[bool] = None
    value_set: Optional[str] = None
    hierarchy_meaning: Optional[str] = None
    compositional: Optional[bool] = None
    version_needed: Optional[bool] = None
    content: Optional[str] = None
    supplements: Optional[str] = None
    count: Optional[int] = None
    filter: Optional[List[Any]] = None
    property: Optional[List[Any]] = None
    concept: Optional[List[CodeSystemConcept]] = None

    def iter_concepts(self):
        """Yield every concept of the (possibly nested) concept tree in pre-order."""
        stack = list(reversed(self.concept or []))
        while stack:
            concept = stack.pop()
            yield concept
            stack.extend(reversed(concept.concept or []))


class ConceptMapTarget(SpecModel):
    """ConceptMap.group.element.target"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    code: Optional[str] = None
    display: Optional[str] = None
    value_set: Optional[str] = None
    relationship: Optional[str] = None
    equivalence: Optional[str] = None
    comment: Optional[str] = None
    property: Optional[List[Any]] = None
    depends_on: Optional[List[Any]] = None
    product: Optional[List[Any]] = None


class ConceptMapElement(SpecModel):
    """ConceptMap.group.element"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    code: Optional[str] = None
    display: Optional[str] = None
    value_set: Optional[str] = None
    no_map: Optional[bool] = None
    target: Optional[List[ConceptMapTarget]] = None


class ConceptMapGroup(SpecModel):
    """ConceptMap.group"""
    id: Optional[str] = None
    extension: Optional[List[Any]] = None
    source: Optional[str] = None
    target: Optional[str] = None
    element: List[ConceptMapElement] = Field(default_factory=list)
    unmapped: Optional[Any] = None


class ConceptMap(CanonicalResource):
    """Translations from one set of codes to another."""

    choice_prefixes: ClassVar[Tuple[str, ...]] = ("versionAlgorithm", "sourceScope", "targetScope", "source", "target")

    property: Optional[List[Any]] = None
    additional_attribute: Optional[List[Any]] = None
    group: List[ConceptMapGroup] = Field(default_factory=list)


class SearchParameter(CanonicalResource):
    """Search parameter definition; only the indexed fields are modelled."""

    strict_fields: ClassVar[bool] = False

    derived_from: Optional[str] = None
    code: Optional[str] = None
    base: List[str] = Field(default_factory=list)
    type: Optional[str] = None
    expression: Optional[str] = None


class OperationDefinition(CanonicalResource):
    """Operation definition; loaded and counted, not lowered."""

    strict_fields: ClassVar[bool] = False

    kind: Optional[str] = None
    code: Optional[str] = None
    resource: Optional[List[str]] = None


class CompartmentDefinition(CanonicalResource):
    """Compartment definition; loaded and counted, not lowered."""

    strict_fields: ClassVar[bool] = False

    code: Optional[str] = None
    search: Optional[bool] = None
    resource: Optional[List[Any]] = None


class OpaqueResource(SpecModel):
    """Specification-only container the pipeline does not interpret."""

    strict_fields: ClassVar[bool] = False

    resource_type: str
    id: Optional[str] = None
    url: Optional[str] = None
    name: Optional[str] = None


RESOURCE_MODELS: Dict[str, type] = {
    "StructureDefinition": StructureDefinition,
    "ValueSet": ValueSet,
    "CodeSystem": CodeSystem,
    "ConceptMap": ConceptMap,
    "SearchParameter": SearchParameter,
    "OperationDefinition": OperationDefinition,
    "CompartmentDefinition": CompartmentDefinition,
}

OPAQUE_RESOURCE_TYPES = frozenset({"CapabilityStatement", "NamingSystem", "ImplementationGuide"})


# ============================================================================
# Loaded bundles
# ============================================================================

class VersionInfo(BaseModel):
    """Contents of the specification's version.info file."""

    fhir_version: Optional[str] = None
    version: Optional[str] = None
    build_id: Optional[str] = None
    date: Optional[str] = None


@dataclass
class BundleEntryRecord:
    """One parsed bundle entry."""

    index: int
    full_url: Optional[str]
    resource: SpecModel

    @property
    def resource_type(self) -> str:
        return getattr(self.resource, "resource_type", "")


@dataclass
class LoadedBundle:
    """A parsed specification bundle."""

    kind: BundleKind
    source_name: str
    entries: List[BundleEntryRecord] = field(default_factory=list)

    def resources_of(self, resource_type: str) -> List[SpecModel]:
        return [e.resource for e in self.entries if e.resource_type == resource_type]


@dataclass
class SpecificationSet:
    """Every bundle loaded for one pipeline run, partitioned by resource kind.

    Attributes:
        bundles: Loaded bundles in BundleKind declaration order
        version_info: Parsed version.info (if present)
        sources: canonical URL -> (source file, fullUrl) for error locations
    """

    bundles: List[LoadedBundle] = field(default_factory=list)
    version_info: Optional[VersionInfo] = None
    sources: Dict[str, Tuple[str, Optional[str]]] = field(default_factory=dict)

    def add(self, bundle: LoadedBundle) -> None:
        self.bundles.append(bundle)
        for entry in bundle.entries:
            url = getattr(entry.resource, "url", None)
            if url and url not in self.sources:
                self.sources[url] = (bundle.source_name, entry.full_url)

    def _all(self, resource_type: str) -> List[Any]:
        found: List[Any] = []
        for bundle in self.bundles:
            found.extend(bundle.resources_of(resource_type))
        return found

    @property
    def structure_definitions(self) -> List[StructureDefinition]:
        return self._all("StructureDefinition")

    @property
    def value_sets(self) -> List[ValueSet]:
        return self._all("ValueSet")

    @property
    def code_systems(self) -> List[CodeSystem]:
        return self._all("CodeSystem")

    @property
    def concept_maps(self) -> List[ConceptMap]:
        return self._all("ConceptMap")

    @property
    def search_parameters(self) -> List[SearchParameter]:
        return self._all("SearchParameter")

    @property
    def fhir_version(self) -> Optional[str]:
        if self.version_info and self.version_info.fhir_version:
            return self.version_info.fhir_version
        for definition in self.structure_definitions:
            if definition.fhir_version:
                return definition.fhir_version
        return None

    def source_of(self, url: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (source file, fullUrl) for a canonical URL."""
        if url and url in self.sources:
            return self.sources[url]
        return None, url

    def inventory(self) -> Dict[str, Dict[str, int]]:
        """Count resources per bundle file and resource type."""
        counts: Dict[str, Dict[str, int]] = {}
        for bundle in self.bundles:
            per_type = counts.setdefault(bundle.source_name, {})
            for entry in bundle.entries:
                per_type[entry.resource_type] = per_type.get(entry.resource_type, 0) + 1
        return counts
