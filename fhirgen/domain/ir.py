"""Generated-side intermediate representation.

The IR is the output of lowering and the input of emission. It is built by
the type resolver and the lowerers, sealed by the orchestrator, and read-only
afterwards.

Ownership:
    - Modules own types, enums, concept-map tables and search indexes
    - Types own fields and invariants; enums own members
    - Cross-references are by stable identifier (type_id, enum_id, module_id),
      never by object reference, so sealed modules can be emitted in parallel
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union


class PrimitiveKind(str, Enum):
    """FHIR primitive data types."""
    BOOLEAN = "boolean"
    INTEGER = "integer"
    INTEGER64 = "integer64"
    DECIMAL = "decimal"
    STRING = "string"
    CODE = "code"
    ID = "id"
    URI = "uri"
    URL = "url"
    CANONICAL = "canonical"
    OID = "oid"
    UUID = "uuid"
    BASE64_BINARY = "base64Binary"
    INSTANT = "instant"
    DATE_TIME = "dateTime"
    DATE = "date"
    TIME = "time"
    MARKDOWN = "markdown"
    XHTML = "xhtml"
    POSITIVE_INT = "positiveInt"
    UNSIGNED_INT = "unsignedInt"

    @classmethod
    def from_code(cls, code: str) -> Optional['PrimitiveKind']:
        for kind in cls:
            if kind.value == code:
                return kind
        return None


# ============================================================================
# Type references
# ============================================================================

@dataclass(frozen=True)
class PrimitiveRef:
    kind: PrimitiveKind


@dataclass(frozen=True)
class ComplexRef:
    """A generated complex type. Reference targets are metadata only."""
    name: str
    module_id: str
    type_id: str
    target_profiles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceRef:
    """A generated resource type; abstract resources accept any resource."""
    name: str
    module_id: str
    type_id: str
    abstract: bool = False


@dataclass(frozen=True)
class PolymorphicRef:
    variants: Tuple['TypeRef', ...]


@dataclass(frozen=True)
class BackboneRef:
    """An inline nested type defined in the same module."""
    type_id: str


@dataclass(frozen=True)
class RecursiveRef:
    """A back-edge to an already defined element (contentReference)."""
    path: str
    type_id: str


@dataclass(frozen=True)
class EnumRef:
    enum_id: str
    module_id: str


@dataclass(frozen=True)
class OpaqueRef:
    """An arbitrary JSON value; used when a type could not be resolved."""
    reason: str


@dataclass(frozen=True)
class PendingRef:
    """A deferred handle for a type that is not registered yet."""
    code: str


TypeRef = Union[
    PrimitiveRef, ComplexRef, ResourceRef, PolymorphicRef, BackboneRef,
    RecursiveRef, EnumRef, OpaqueRef, PendingRef,
]


def iter_type_refs(type_ref: TypeRef) -> Iterator[TypeRef]:
    """Yield a type reference and, for choices, every variant."""
    yield type_ref
    if isinstance(type_ref, PolymorphicRef):
        for variant in type_ref.variants:
            yield from iter_type_refs(variant)


# ============================================================================
# Fields, types and invariants
# ============================================================================

class FieldShape(str, Enum):
    """Cardinality-derived shape of a generated field."""
    SCALAR = "scalar"
    OPTIONAL = "optional"
    SEQUENCE = "sequence"
    NONEMPTY = "nonempty"

    @property
    def is_sequence(self) -> bool:
        return self in (FieldShape.SEQUENCE, FieldShape.NONEMPTY)

    @property
    def is_required(self) -> bool:
        return self in (FieldShape.SCALAR, FieldShape.NONEMPTY)


@dataclass(frozen=True)
class BindingRef:
    """A terminology binding attached to a coded field."""
    value_set: str
    strength: str
    enum_id: Optional[str] = None
    module_id: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self.enum_id is not None


@dataclass(frozen=True)
class GeneratedInvariant:
    """A FHIRPath constraint preserved verbatim."""
    key: str
    severity: str
    human: str
    expression: Optional[str]
    path: str


@dataclass(frozen=True)
class SliceDefinition:
    """One named slice of a sliced element.

    Attributes:
        name: sliceName
        min_items: Minimum occurrences of the slice
        max_items: Maximum occurrences (None for unbounded)
        values: path relative to the slice -> (constraint kind, value), where
                kind is one of "fixed", "pattern" or "exists"
        type_codes: Type codes allowed for the slice (type discriminators)
        profiles: Profiles the slice conforms to (profile discriminators)
    """
    name: str
    min_items: int
    max_items: Optional[int]
    values: Tuple[Tuple[str, str, Any], ...] = ()
    type_codes: Tuple[str, ...] = ()
    profiles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SlicingInfo:
    """Slicing rules of a repeating element."""
    discriminators: Tuple[Tuple[str, str], ...]
    rules: str
    ordered: bool
    slices: Tuple[SliceDefinition, ...] = ()

    def with_slice(self, definition: SliceDefinition) -> 'SlicingInfo':
        kept = tuple(s for s in self.slices if s.name != definition.name)
        return SlicingInfo(self.discriminators, self.rules, self.ordered, kept + (definition,))


class SealedModuleError(AttributeError):
    """Raised when a sealed module, or anything it owns, is mutated."""


class SealableRecord:
    """Mutable while lowering, read-only once the owning module is sealed."""

    _sealed = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_sealed", False):
            raise SealedModuleError(f"{type(self).__name__} belongs to a sealed module")
        super().__setattr__(name, value)

    def freeze(self, **sequences: Any) -> None:
        """Store the given sequences as tuples and reject further mutation."""
        for name, value in sequences.items():
            object.__setattr__(self, name, tuple(value))
        object.__setattr__(self, "_sealed", True)


@dataclass
class GeneratedField(SealableRecord):
    """One field of a generated record type.

    ``name`` is the target identifier, ``wire_name`` the camelCase JSON key.
    Choice variants share a ``choice_group`` (the wire base without ``[x]``).
    ``nested_values`` holds fixed and pattern values a profile places below a
    complex-typed field, as (wire path relative to the field, kind, value).
    """
    name: str
    wire_name: str
    shape: FieldShape
    type_ref: TypeRef
    path: str
    min_items: int = 0
    max_items: Optional[int] = None
    fixed: Optional[Any] = None
    pattern: Optional[Any] = None
    binding: Optional[BindingRef] = None
    doc: str = ""
    deprecated: bool = False
    choice_group: Optional[str] = None
    choice_required: bool = False
    slicing: Optional[SlicingInfo] = None
    primitive_extension: bool = False
    extension_name: Optional[str] = None
    extension_type_ref: Optional[TypeRef] = None
    nested_values: Tuple[Tuple[str, str, Any], ...] = ()

    @property
    def has_fixed(self) -> bool:
        return self.fixed is not None

    @property
    def has_pattern(self) -> bool:
        return self.pattern is not None


class TypeKind(str, Enum):
    """Kind of generated record type."""
    COMPLEX = "complex-type"
    RESOURCE = "resource"
    BACKBONE = "backbone"


@dataclass(frozen=True)
class ParentRef:
    """The type a generated type specializes or constrains."""
    type_id: str
    module_id: str
    fhir_name: str


@dataclass
class GeneratedType(SealableRecord):
    """A nominal record type."""
    type_id: str
    fhir_name: str
    kind: TypeKind
    path: str
    doc: str = ""
    fields: List[GeneratedField] = field(default_factory=list)
    invariants: List[GeneratedInvariant] = field(default_factory=list)
    parent: Optional[ParentRef] = None
    abstract: bool = False
    profile_url: Optional[str] = None
    canonical_url: Optional[str] = None

    def add_field(self, generated: GeneratedField) -> None:
        self.fields.append(generated)

    def add_invariant(self, invariant: GeneratedInvariant) -> None:
        if all(existing.key != invariant.key for existing in self.invariants):
            self.invariants.append(invariant)

    def field_by_wire(self, wire_name: str) -> Optional[GeneratedField]:
        for generated in self.fields:
            if generated.wire_name == wire_name:
                return generated
        return None


@dataclass(frozen=True)
class EnumMember:
    """One member of a generated enumeration."""
    name: str
    code: str
    display: Optional[str] = None
    definition: Optional[str] = None
    system: Optional[str] = None
    deprecated: bool = False


@dataclass
class GeneratedEnum(SealableRecord):
    """An enumeration generated from a value set."""
    enum_id: str
    value_set: str
    closed: bool
    members: List[EnumMember] = field(default_factory=list)
    doc: str = ""
    version: Optional[str] = None


@dataclass(frozen=True)
class ConceptMapTarget:
    system: Optional[str]
    code: Optional[str]
    relationship: str
    display: Optional[str] = None


@dataclass
class ConceptMapTable(SealableRecord):
    """Lookup table built from a ConceptMap."""
    name: str
    url: Optional[str]
    entries: List[Tuple[Tuple[Optional[str], str], Tuple[ConceptMapTarget, ...]]] = field(default_factory=list)
    doc: str = ""


@dataclass(frozen=True)
class SearchParameterEntry:
    code: str
    type: str
    expression: Optional[str]
    url: Optional[str]


# ============================================================================
# Modules
# ============================================================================

class ModuleKind(str, Enum):
    STRUCTURE = "structure"
    VALUE_SET = "value_set"
    CONCEPT_MAP = "concept_map"
    SEARCH_INDEX = "search_index"


@dataclass
class GeneratedModule:
    """One emitted file worth of IR.

    After ``seal()`` the module and everything it owns is read-only.
    """
    module_id: str
    kind: ModuleKind
    canonical_url: Optional[str] = None
    version: Optional[str] = None
    resource_id: Optional[str] = None
    fhir_name: Optional[str] = None
    source_file: Optional[str] = None
    types: List[GeneratedType] = field(default_factory=list)
    enums: List[GeneratedEnum] = field(default_factory=list)
    concept_maps: List[ConceptMapTable] = field(default_factory=list)
    search_parameters: Dict[str, List[SearchParameterEntry]] = field(default_factory=dict)
    sealed: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "sealed", False):
            raise SealedModuleError(f"Module {self.module_id} is sealed")
        super().__setattr__(name, value)

    @property
    def root_type(self) -> Optional[GeneratedType]:
        return self.types[0] if self.types else None

    def pending_codes(self) -> List[str]:
        """Return the codes of every deferred type reference, sorted."""
        codes = set()
        for generated_type in self.types:
            for generated in generated_type.fields:
                for ref in iter_type_refs(generated.type_ref):
                    if isinstance(ref, PendingRef):
                        codes.add(ref.code)
        return sorted(codes)

    def seal(self) -> 'GeneratedModule':
        """Freeze the module; further mutation raises SealedModuleError."""
        for generated_type in self.types:
            for generated in generated_type.fields:
                generated.freeze()
            generated_type.freeze(fields=generated_type.fields, invariants=generated_type.invariants)
        for generated_enum in self.enums:
            generated_enum.freeze(members=generated_enum.members)
        for table in self.concept_maps:
            table.freeze(entries=table.entries)
        object.__setattr__(self, "types", tuple(self.types))
        object.__setattr__(self, "enums", tuple(self.enums))
        object.__setattr__(self, "concept_maps", tuple(self.concept_maps))
        object.__setattr__(
            self,
            "search_parameters",
            {base: tuple(entries) for base, entries in sorted(self.search_parameters.items())},
        )
        object.__setattr__(self, "sealed", True)
        return self


@dataclass
class GenerationIndex:
    """Cross-module lookup used by the emitter.

    Attributes:
        types: type_id -> (module_id, GeneratedType)
        enums: enum_id -> module_id
        modules: module_id -> GeneratedModule
        fhir_version: FHIR version of the input specification
    """
    types: Dict[str, Tuple[str, GeneratedType]] = field(default_factory=dict)
    enums: Dict[str, str] = field(default_factory=dict)
    modules: Dict[str, GeneratedModule] = field(default_factory=dict)
    fhir_version: Optional[str] = None

    @classmethod
    def build(cls, modules: List[GeneratedModule], fhir_version: Optional[str] = None) -> 'GenerationIndex':
        index = cls(fhir_version=fhir_version)
        for module in modules:
            index.modules[module.module_id] = module
            for generated_type in module.types:
                index.types[generated_type.type_id] = (module.module_id, generated_type)
            for generated_enum in module.enums:
                index.enums[generated_enum.enum_id] = module.module_id
        return index

    def lookup_type(self, type_id: str) -> Optional[GeneratedType]:
        found = self.types.get(type_id)
        return found[1] if found else None
