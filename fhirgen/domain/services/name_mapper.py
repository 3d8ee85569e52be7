"""Name Mapper - FHIR identifiers to Python identifiers and back.

Maps FHIR wire names (camelCase JSON keys, type names, codes) onto Python
identifiers following PEP 8 conventions, escaping reserved words and
resolving collisions with a deterministic suffixing rule.

Conventions:
    - Types and enum variants: PascalCase
    - Fields and modules: snake_case
    - Primitive extension sidecars (``_birthDate``): ``<ident>_ext``

Guarantees:
    - Injective per scope: two wire names never share an identifier
    - Stable: mappings are memoized, so the same input always produces the
      same identifier, and registration order alone decides who gets a suffix
    - Reversible: ``ident_to_wire(wire_to_ident(n, k)) == n``
"""

import keyword
import logging
import re
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX_BUDGET = 99

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_ALNUM = re.compile(r"[^0-9A-Za-z]+")

SYMBOLIC_NAMES = {
    "<": "LessThan",
    "<=": "LessOrEqual",
    ">": "GreaterThan",
    ">=": "GreaterOrEqual",
    "=": "Equal",
    "!=": "NotEqual",
    "*": "Asterisk",
    "+": "Plus",
    "-": "Minus",
    "/": "Slash",
    "%": "Percent",
    "&": "Ampersand",
}

_PYTHON_KEYWORDS = frozenset(keyword.kwlist)

_MODEL_ATTRIBUTES = frozenset({
    "model_config", "model_fields", "model_computed_fields", "model_extra",
    "model_fields_set", "model_construct", "model_copy", "model_dump",
    "model_dump_json", "model_json_schema", "model_parametrized_name",
    "model_post_init", "model_rebuild", "model_validate", "model_validate_json",
    "model_validate_strings", "copy", "dict", "json", "parse_obj", "parse_raw",
    "parse_file", "from_orm", "construct", "schema", "schema_json", "validate",
    "update_forward_refs", "fields",
})

_RUNTIME_HOOKS = frozenset({
    "to_fhir", "to_json", "from_fhir", "check_fhir_rules", "resource_type",
    "fhir_type_name", "fhir_choice_groups", "fhir_slicing", "fhir_fixed",
    "fhir_patterns", "fhir_bindings", "fhir_invariants", "fhir_prohibited",
    "fhir_abstract", "fhir_profile", "fhir_url",
})

_GENERATED_MODULE_NAMES = frozenset({
    "Any", "ClassVar", "Dict", "List", "Optional", "Tuple", "Union", "Field",
    "FhirModel", "FhirResource", "FhirEnum", "AnyResource", "ChoiceGroup",
    "SlicingRule", "Slice", "Invariant", "Binding", "ConceptInfo",
    "ConceptMapping", "SearchParameterInfo",
    "FhirBoolean", "FhirInteger", "FhirInteger64", "FhirDecimal", "FhirString",
    "FhirCode", "FhirId", "FhirUri", "FhirUrl", "FhirCanonical", "FhirOid",
    "FhirUuid", "FhirBase64Binary", "FhirInstant", "FhirDateTime", "FhirDate",
    "FhirTime", "FhirMarkdown", "FhirXhtml", "FhirPositiveInt", "FhirUnsignedInt",
})


class NameKind(str, Enum):
    """Kinds of generated identifiers."""
    TYPE = "type"
    FIELD = "field"
    ENUM_VARIANT = "enum-variant"
    MODULE = "module"


RESERVED: Dict[NameKind, frozenset] = {
    NameKind.TYPE: _PYTHON_KEYWORDS | _GENERATED_MODULE_NAMES,
    NameKind.FIELD: _PYTHON_KEYWORDS | _MODEL_ATTRIBUTES | _RUNTIME_HOOKS,
    NameKind.ENUM_VARIANT: _PYTHON_KEYWORDS,
    NameKind.MODULE: _PYTHON_KEYWORDS | frozenset({"_base", "__init__", "search_parameters"}),
}


class NameCollisionBudgetExceeded(Exception):
    """Raised when a scope runs out of collision suffixes.

    Callers convert this into a NameCollisionError value.
    """

    def __init__(self, scope: str, wire_name: str, budget: int):
        super().__init__(f"Scope '{scope}' exhausted {budget} suffixes for '{wire_name}'")
        self.scope = scope
        self.wire_name = wire_name
        self.budget = budget


def upper_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def snake_case(name: str) -> str:
    """Convert camelCase / PascalCase / dashed names to snake_case."""
    spaced = _CAMEL_BOUNDARY.sub("_", name)
    cleaned = _NON_ALNUM.sub("_", spaced).strip("_").lower()
    cleaned = re.sub(r"_+", "_", cleaned)
    if not cleaned:
        return "value"
    if cleaned[0].isdigit():
        return f"n_{cleaned}"
    return cleaned


def pascal_case(name: str, digit_prefix: str = "Fhir") -> str:
    """Convert a dotted, dashed or camelCase name to PascalCase.

    Internal capitals are preserved (``CodeableConcept`` stays as is).
    """
    if name in SYMBOLIC_NAMES:
        return SYMBOLIC_NAMES[name]
    parts = [p for p in _NON_ALNUM.split(name) if p]
    if not parts:
        return "Value"
    converted = "".join(upper_first(p) for p in parts)
    if converted[0].isdigit():
        return f"{digit_prefix}{converted}"
    return converted


class NameMapper:
    """Bidirectional mapping between FHIR names and Python identifiers.

    Scopes:
        - ``type`` and ``module`` are global
        - fields are scoped per generated type (``field:<type_id>``)
        - enum variants are scoped per enumeration (``enum:<enum_id>``)

    Example:
        ```python
        names = NameMapper()
        names.wire_to_ident("birthDate", NameKind.FIELD, scope="field:Patient")  # "birth_date"
        names.wire_to_ident("class", NameKind.FIELD, scope="field:Encounter")    # "class_x"
        ```
    """

    def __init__(self, suffix_budget: int = DEFAULT_SUFFIX_BUDGET):
        self.suffix_budget = suffix_budget
        self._forward: Dict[Tuple[str, str], str] = {}
        self._reverse: Dict[Tuple[str, str], str] = {}
        self._collisions: List[Tuple[str, str, str]] = []

    @staticmethod
    def default_scope(kind: NameKind) -> str:
        return NameKind(kind).value

    def _convert(self, name: str, kind: NameKind) -> str:
        if kind == NameKind.FIELD:
            if name.startswith("_"):
                return f"{self._convert(name[1:], kind)}_ext"
            return snake_case(name.rsplit(".", 1)[-1])
        if kind == NameKind.MODULE:
            return snake_case(name)
        if kind == NameKind.ENUM_VARIANT:
            return pascal_case(name, digit_prefix="Code")
        return pascal_case(name)

    def wire_to_ident(self, name: str, kind: NameKind, scope: Optional[str] = None,
                      source: Optional[str] = None) -> str:
        """Map a FHIR name to a Python identifier within a scope.

        Parameters:
            name: FHIR wire name (element path, JSON key, type name, code or
                  canonical URL)
            kind: Identifier kind deciding the naming convention
            scope: Naming scope (defaults to the global scope of the kind)
            source: Text to derive the identifier from when ``name`` is a
                    unique key rather than a readable name

        Returns:
            The identifier, memoized per (scope, name)

        Raises:
            NameCollisionBudgetExceeded: If every suffix up to the budget is taken
        """
        kind = NameKind(kind)
        scope = scope or self.default_scope(kind)
        key = (scope, name)
        if key in self._forward:
            return self._forward[key]

        base = self._convert(source if source is not None else name, kind)
        reserved = RESERVED[kind]
        ident = base
        if ident in reserved or (scope, ident) in self._reverse:
            ident = self._next_free(scope, base, name, reserved)

        self._forward[key] = ident
        self._reverse[(scope, ident)] = name
        return ident

    def _next_free(self, scope: str, base: str, name: str, reserved: frozenset) -> str:
        candidates = [f"{base}_x"] + [f"{base}_{n}" for n in range(1, self.suffix_budget + 1)]
        for candidate in candidates:
            if candidate not in reserved and (scope, candidate) not in self._reverse:
                self._collisions.append((scope, name, candidate))
                logger.debug(f"Name collision in {scope}: '{name}' -> '{candidate}'")
                return candidate
        raise NameCollisionBudgetExceeded(scope, name, self.suffix_budget)

    def ident_to_wire(self, ident: str, kind: NameKind = NameKind.TYPE, scope: Optional[str] = None) -> str:
        """Return the FHIR name an identifier was produced from.

        Raises:
            KeyError: If the identifier was never produced in that scope
        """
        scope = scope or self.default_scope(NameKind(kind))
        return self._reverse[(scope, ident)]

    def expand_choice(self, base: str, type_codes: Iterable[str]) -> List[str]:
        """Expand a ``foo[x]`` element into its variant wire names, in order."""
        stem = base.rsplit(".", 1)[-1]
        if stem.endswith("[x]"):
            stem = stem[:-3]
        return [f"{stem}{upper_first(code)}" for code in type_codes]

    def inherit_scope(self, child_scope: str, parent_scope: str) -> None:
        """Seed a scope with every mapping of another scope.

        Used so a specialized type maps inherited wire names to the same
        identifiers its parent uses.
        """
        inherited = sorted(
            (name, ident) for (scope, name), ident in self._forward.items() if scope == parent_scope
        )
        for name, ident in inherited:
            if (child_scope, name) in self._forward or (child_scope, ident) in self._reverse:
                continue
            self._forward[(child_scope, name)] = ident
            self._reverse[(child_scope, ident)] = name

    def scope_mapping(self, scope: str) -> Dict[str, str]:
        """Return wire name -> identifier for one scope."""
        return {name: ident for (s, name), ident in self._forward.items() if s == scope}

    def scopes(self) -> List[str]:
        return sorted({scope for scope, _ in self._forward})

    @property
    def collisions(self) -> List[Tuple[str, str, str]]:
        """(scope, wire name, suffixed identifier) for every suffixed mapping."""
        return list(self._collisions)
