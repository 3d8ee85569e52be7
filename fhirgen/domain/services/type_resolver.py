"""Type Resolver - FHIR type references to IR type references.

The resolver owns the per-run type registry: FHIR type names (primitives,
complex types, resources), canonical URLs (profiles, resources, value sets)
and element paths (for contentReference back-edges). It is written once per
registration and read many times by the lowerers.

Lifecycle:
    - ``declare_*`` registers a placeholder so self and forward references
      resolve immediately
    - ``seal`` marks a type as fully lowered; specializations wait on it
    - A registry instance belongs to exactly one pipeline run
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from fhirgen.domain.ir import (
    ComplexRef,
    EnumRef,
    PendingRef,
    PolymorphicRef,
    PrimitiveKind,
    PrimitiveRef,
    ResourceRef,
    TypeRef,
)
from fhirgen.domain.spec_models import ElementType

logger = logging.getLogger(__name__)

FHIRPATH_SYSTEM_PREFIX = "http://hl7.org/fhirpath/System."
STRUCTURE_DEFINITION_PREFIX = "http://hl7.org/fhir/StructureDefinition/"

SYSTEM_TYPES: Dict[str, PrimitiveKind] = {
    "String": PrimitiveKind.STRING,
    "Boolean": PrimitiveKind.BOOLEAN,
    "Integer": PrimitiveKind.INTEGER,
    "Long": PrimitiveKind.INTEGER64,
    "Decimal": PrimitiveKind.DECIMAL,
    "Date": PrimitiveKind.DATE,
    "DateTime": PrimitiveKind.DATE_TIME,
    "Time": PrimitiveKind.TIME,
}

# Reference-like types whose targetProfile is recorded as metadata
REFERENCE_TYPES = frozenset({"Reference", "CodeableReference", "canonical"})


@dataclass(frozen=True)
class TypeEntry:
    """A registered FHIR type."""
    fhir_name: str
    category: str
    module_id: Optional[str] = None
    type_id: Optional[str] = None
    primitive: Optional[PrimitiveKind] = None
    abstract: bool = False
    url: Optional[str] = None


@dataclass(frozen=True)
class BindingEntry:
    """A registered value-set binding target."""
    value_set_url: str
    enum_id: Optional[str]
    module_id: Optional[str]
    closed: bool


def is_system_type(code: Optional[str]) -> bool:
    return bool(code) and code.startswith(FHIRPATH_SYSTEM_PREFIX)


class TypeResolver:
    """Registry of FHIR types and bindings for one pipeline run.

    Example:
        ```python
        resolver = TypeResolver()
        resolver.register_primitive("string", PrimitiveKind.STRING)
        resolver.register_complex("HumanName", "human_name", "HumanName")
        resolver.resolve_type(ElementType(code="HumanName"))
        # ComplexRef(name="HumanName", module_id="human_name", type_id="HumanName")
        ```
    """

    def __init__(self):
        self._types: Dict[str, TypeEntry] = {}
        self._urls: Dict[str, TypeEntry] = {}
        self._bindings: Dict[str, BindingEntry] = {}
        self._paths: Dict[str, Tuple[str, str]] = {}
        self._sealed: set = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_primitive(self, fhir_name: str, primitive_kind: PrimitiveKind, url: Optional[str] = None) -> None:
        entry = TypeEntry(fhir_name=fhir_name, category="primitive", primitive=primitive_kind, url=url)
        self._types[fhir_name] = entry
        self._urls[url or f"{STRUCTURE_DEFINITION_PREFIX}{fhir_name}"] = entry
        self._sealed.add(fhir_name)

    def register_complex(self, fhir_name: str, module_id: str, type_id: str,
                         url: Optional[str] = None, abstract: bool = False) -> None:
        entry = TypeEntry(fhir_name=fhir_name, category="complex", module_id=module_id,
                          type_id=type_id, abstract=abstract, url=url)
        self._types[fhir_name] = entry
        self._urls[url or f"{STRUCTURE_DEFINITION_PREFIX}{fhir_name}"] = entry

    def register_resource(self, fhir_name: str, module_id: str, type_id: str,
                          url: Optional[str] = None, abstract: bool = False) -> None:
        entry = TypeEntry(fhir_name=fhir_name, category="resource", module_id=module_id,
                          type_id=type_id, abstract=abstract, url=url)
        self._types[fhir_name] = entry
        self._urls[url or f"{STRUCTURE_DEFINITION_PREFIX}{fhir_name}"] = entry

    def register_profile(self, url: str, fhir_name: str, module_id: str, type_id: str, category: str) -> None:
        """Register a constraint profile by canonical URL only."""
        self._urls[url] = TypeEntry(fhir_name=fhir_name, category=category, module_id=module_id,
                                    type_id=type_id, url=url)

    def register_binding(self, value_set_url: str, enum_id: Optional[str], closed: bool,
                         module_id: Optional[str] = None) -> None:
        self._bindings[value_set_url] = BindingEntry(
            value_set_url=value_set_url, enum_id=enum_id, module_id=module_id, closed=closed,
        )

    def register_path(self, path: str, module_id: str, type_id: str) -> None:
        """Register the generated type holding the element at a FHIR path."""
        self._paths[path] = (module_id, type_id)

    def seal(self, key: str) -> None:
        """Mark a type (by FHIR name or canonical URL) as fully lowered."""
        self._sealed.add(key)

    def is_sealed(self, key: str) -> bool:
        return key in self._sealed

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, fhir_name: str) -> Optional[TypeEntry]:
        return self._types.get(fhir_name)

    def lookup_url(self, url: Optional[str]) -> Optional[TypeEntry]:
        if not url:
            return None
        return self._urls.get(url.split("|", 1)[0])

    def lookup_binding(self, value_set_url: Optional[str]) -> Optional[BindingEntry]:
        """Find a binding; ``url|version`` falls back to the bare URL."""
        if not value_set_url:
            return None
        if value_set_url in self._bindings:
            return self._bindings[value_set_url]
        return self._bindings.get(value_set_url.split("|", 1)[0])

    def lookup_path(self, path: str) -> Optional[Tuple[str, str]]:
        return self._paths.get(path)

    def registered_names(self, category: Optional[str] = None) -> List[str]:
        return sorted(
            name for name, entry in self._types.items() if category is None or entry.category == category
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def normalize_code(self, element_type: ElementType) -> Optional[str]:
        """Return the FHIR type code an ElementDefinition.type refers to."""
        override = element_type.fhir_type_override()
        if override:
            return override.rsplit("/", 1)[-1]
        code = element_type.code
        if code and code.startswith(STRUCTURE_DEFINITION_PREFIX):
            return code[len(STRUCTURE_DEFINITION_PREFIX):]
        return code

    def resolve_code(self, code: str, target_profiles: Iterable[str] = ()) -> TypeRef:
        if is_system_type(code):
            system_name = code[len(FHIRPATH_SYSTEM_PREFIX):]
            return PrimitiveRef(SYSTEM_TYPES.get(system_name, PrimitiveKind.STRING))

        entry = self._types.get(code) or self.lookup_url(code)
        if entry is None:
            logger.debug(f"Type '{code}' not registered yet, deferring")
            return PendingRef(code)

        if entry.category == "primitive":
            return PrimitiveRef(entry.primitive)
        if entry.category == "resource":
            return ResourceRef(name=entry.fhir_name, module_id=entry.module_id,
                               type_id=entry.type_id, abstract=entry.abstract)
        profiles = tuple(target_profiles) if code in REFERENCE_TYPES else ()
        return ComplexRef(name=entry.fhir_name, module_id=entry.module_id,
                          type_id=entry.type_id, target_profiles=profiles)

    def resolve_type(self, element_type: ElementType) -> TypeRef:
        """Resolve one ElementDefinition.type entry.

        For Reference-like types, targetProfile is carried as metadata; the
        underlying type is unchanged.

        Returns:
            The resolved TypeRef, or a PendingRef if the type is unknown
        """
        code = self.normalize_code(element_type)
        if not code:
            return PendingRef("")
        return self.resolve_code(code, element_type.target_profile or ())

    def resolve_choice(self, element_types: List[ElementType]) -> PolymorphicRef:
        """Resolve a multi-type element into a choice, preserving declaration order."""
        return PolymorphicRef(tuple(self.resolve_type(t) for t in element_types))

    def enum_ref(self, value_set_url: Optional[str]) -> Optional[EnumRef]:
        """Return the enumeration a value set resolved to, if it is closed."""
        binding = self.lookup_binding(value_set_url)
        if binding is None or not binding.closed or binding.enum_id is None:
            return None
        return EnumRef(enum_id=binding.enum_id, module_id=binding.module_id)
