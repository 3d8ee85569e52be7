"""Terminology Lowerer - value sets, code systems and concept maps.

Turns ValueSet + CodeSystem + ConceptMap resources into closed enumerations,
binding registrations and translation tables.

Algorithm:
    1. Index code systems by canonical URL
    2. For every value set (alphabetical by name), compute the effective
       expansion: a precomputed ``expansion.contains`` wins, otherwise
       ``compose.include`` is resolved against the indexed code systems
       (imports resolved recursively, ``compose.exclude`` applied)
    3. A value set is closed iff every referenced system is known and
       ``content == complete`` and no filter is used; an empty closed set is
       treated as open
    4. Closed value sets become GeneratedEnums ordered by (system, code);
       every value set registers a binding with the type resolver
    5. Concept maps become lookup tables keyed by (source system, source code)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from fhirgen.domain.ir import (
    ConceptMapTable,
    ConceptMapTarget,
    EnumMember,
    GeneratedEnum,
    GeneratedModule,
    ModuleKind,
)
from fhirgen.domain.ports import BindingResolutionError, PipelineError, Result
from fhirgen.domain.services.name_mapper import NameKind, NameMapper
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.spec_models import (
    CodeSystem,
    ConceptMap,
    SpecificationSet,
    ValueSet,
    ValueSetInclude,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Concept:
    system: Optional[str]
    code: str
    display: Optional[str] = None
    definition: Optional[str] = None
    deprecated: bool = False


@dataclass
class Expansion:
    """Effective expansion of one value set."""
    concepts: List[Concept] = field(default_factory=list)
    closed: bool = True

    def ordered(self) -> List[Concept]:
        """Concepts sorted by (system, code), first occurrence of each code kept."""
        seen: Set[str] = set()
        ordered: List[Concept] = []
        for concept in sorted(self.concepts, key=lambda c: (c.system or "", c.code)):
            if concept.code in seen:
                continue
            seen.add(concept.code)
            ordered.append(concept)
        return ordered


class TerminologyLowerer:
    """Lowers terminology resources into enumerations and lookup tables.

    Parameters:
        names: Shared name mapper
        resolver: Shared type registry (bindings are registered here)
        specification: Loaded specification (used for error locations)
    """

    def __init__(self, names: NameMapper, resolver: TypeResolver,
                 specification: Optional[SpecificationSet] = None):
        self.names = names
        self.resolver = resolver
        self.specification = specification
        self._code_systems: Dict[str, CodeSystem] = {}
        self._value_sets: Dict[str, ValueSet] = {}
        self._expansions: Dict[str, Expansion] = {}
        self._expanding: Set[str] = set()
        self._errors: List[PipelineError] = []

    def lower(
        self,
        code_systems: Sequence[CodeSystem],
        value_sets: Sequence[ValueSet],
        concept_maps: Sequence[ConceptMap],
    ) -> Result[List[GeneratedModule]]:
        """Lower every terminology resource.

        Returns:
            Result[List[GeneratedModule]]: enum and concept-map modules, sealed,
            with BindingResolutionError warnings as diagnostics
        """
        self._errors = []
        self._index(code_systems, value_sets)

        modules: List[GeneratedModule] = []
        enum_count = 0
        for value_set in sorted(value_sets, key=lambda v: (v.name or v.id or "", v.url or "")):
            module = self._lower_value_set(value_set)
            if module is not None:
                modules.append(module.seal())
                enum_count += 1

        for concept_map in sorted(concept_maps, key=lambda c: (c.name or c.id or "", c.url or "")):
            modules.append(self._lower_concept_map(concept_map).seal())

        logger.info(
            f"Terminology lowered: {enum_count} closed enumerations out of {len(value_sets)} value sets, "
            f"{len(concept_maps)} concept maps"
        )
        return Result.success_result(modules, diagnostics=self._errors)

    # ------------------------------------------------------------------
    # Value sets
    # ------------------------------------------------------------------

    def _index(self, code_systems: Sequence[CodeSystem], value_sets: Sequence[ValueSet]) -> None:
        for code_system in code_systems:
            if not code_system.url:
                continue
            self._code_systems.setdefault(code_system.url, code_system)
            if code_system.version:
                self._code_systems.setdefault(f"{code_system.url}|{code_system.version}", code_system)
        for value_set in value_sets:
            if not value_set.url:
                continue
            self._value_sets.setdefault(value_set.url, value_set)
            if value_set.version:
                self._value_sets.setdefault(f"{value_set.url}|{value_set.version}", value_set)

    def _warn(self, message: str, url: Optional[str]) -> None:
        file, full_url = (None, url)
        if self.specification is not None:
            file, full_url = self.specification.source_of(url)
        logger.warning(message)
        self._errors.append(BindingResolutionError(message=message, file=file, full_url=full_url or url))

    def expand(self, value_set: ValueSet) -> Expansion:
        """Compute (and memoize) the effective expansion of a value set."""
        key = value_set.url or value_set.id or ""
        if key in self._expansions:
            return self._expansions[key]
        if key in self._expanding:
            self._warn(f"Value set {key} imports itself; treating it as open", value_set.url)
            return Expansion(closed=False)

        self._expanding.add(key)
        try:
            if value_set.expansion is not None and value_set.expansion.contains:
                expansion = self._from_expansion(value_set)
            else:
                expansion = self._from_compose(value_set)
        finally:
            self._expanding.discard(key)

        self._expansions[key] = expansion
        return expansion

    def _from_expansion(self, value_set: ValueSet) -> Expansion:
        expansion = Expansion()
        stack = list(reversed(value_set.expansion.contains or []))
        while stack:
            contains = stack.pop()
            stack.extend(reversed(contains.contains or []))
            if not contains.code or contains.abstract:
                continue
            known = self._code_systems.get(contains.system or "")
            if known is None or known.content != "complete":
                expansion.closed = False
            definition = None
            deprecated = bool(contains.inactive)
            if known is not None:
                for concept in known.iter_concepts():
                    if concept.code == contains.code:
                        definition = concept.definition
                        deprecated = deprecated or concept.is_deprecated()
                        break
            expansion.concepts.append(Concept(
                system=contains.system, code=contains.code, display=contains.display,
                definition=definition, deprecated=deprecated,
            ))

        total = value_set.expansion.total
        if total is not None and total != len(expansion.concepts):
            expansion.closed = False
        if value_set.compose is not None and any(inc.filter for inc in value_set.compose.include):
            expansion.closed = False
        return expansion

    def _from_compose(self, value_set: ValueSet) -> Expansion:
        expansion = Expansion()
        compose = value_set.compose
        if compose is None or not compose.include:
            expansion.closed = False
            return expansion

        for include in compose.include:
            concepts, closed = self._resolve_include(include, value_set)
            expansion.concepts.extend(concepts)
            expansion.closed = expansion.closed and closed

        for exclude in compose.exclude or []:
            excluded, _ = self._resolve_include(exclude, value_set)
            if exclude.system and not exclude.concept and not exclude.value_set:
                expansion.concepts = [c for c in expansion.concepts if c.system != exclude.system]
            removed = {(c.system, c.code) for c in excluded}
            expansion.concepts = [c for c in expansion.concepts if (c.system, c.code) not in removed]
        return expansion

    def _resolve_include(self, include: ValueSetInclude, owner: ValueSet) -> Tuple[List[Concept], bool]:
        closed = True
        imported: Optional[List[Concept]] = None

        for url in include.value_set or []:
            target = self._value_sets.get(url) or self._value_sets.get(url.split("|", 1)[0])
            if target is None:
                self._warn(f"Value set {owner.url} imports unknown value set {url}", owner.url)
                closed = False
                continue
            sub = self.expand(target)
            closed = closed and sub.closed
            imported = (imported or []) + sub.concepts

        if include.filter:
            closed = False

        if not include.system:
            return imported or [], closed

        code_system = self._code_systems.get(include.system)
        if include.version and code_system is None:
            code_system = self._code_systems.get(f"{include.system}|{include.version}")

        if code_system is None:
            closed = False
            if not include.concept:
                self._warn(
                    f"Value set {owner.url} includes unknown code system {include.system}", owner.url,
                )
        elif code_system.content != "complete":
            closed = False

        concepts = self._system_concepts(include, code_system)
        if imported is not None:
            codes = {(c.system, c.code) for c in imported}
            concepts = [c for c in concepts if (c.system, c.code) in codes]
        return concepts, closed

    def _system_concepts(self, include: ValueSetInclude, code_system: Optional[CodeSystem]) -> List[Concept]:
        defined = {}
        if code_system is not None:
            defined = {concept.code: concept for concept in code_system.iter_concepts()}

        if include.concept:
            concepts = []
            for listed in include.concept:
                known = defined.get(listed.code)
                if code_system is not None and known is None:
                    logger.debug(f"Code '{listed.code}' not defined in {include.system}")
                concepts.append(Concept(
                    system=include.system,
                    code=listed.code,
                    display=listed.display or (known.display if known else None),
                    definition=known.definition if known else None,
                    deprecated=known.is_deprecated() if known else False,
                ))
            return concepts

        if include.filter:
            return []

        return [
            Concept(system=include.system, code=concept.code, display=concept.display,
                    definition=concept.definition, deprecated=concept.is_deprecated())
            for concept in defined.values()
        ]

    def _lower_value_set(self, value_set: ValueSet) -> Optional[GeneratedModule]:
        if not value_set.url:
            return None
        expansion = self.expand(value_set)
        ordered = expansion.ordered()
        closed = expansion.closed and bool(ordered)

        if not closed:
            if expansion.closed:
                logger.debug(f"Value set {value_set.url} is closed but empty; treating as open")
            self._register(value_set, None, None, closed=False)
            return None

        display_name = value_set.name or value_set.id or value_set.url.rsplit("/", 1)[-1]
        enum_id = self.names.wire_to_ident(value_set.url, NameKind.TYPE, source=display_name)
        module_id = self.names.wire_to_ident(value_set.url, NameKind.MODULE, source=f"ValueSet.{display_name}")
        scope = f"enum:{enum_id}"
        members = [
            EnumMember(
                name=self.names.wire_to_ident(concept.code, NameKind.ENUM_VARIANT, scope=scope),
                code=concept.code,
                display=concept.display,
                definition=concept.definition,
                system=concept.system,
                deprecated=concept.deprecated,
            )
            for concept in ordered
        ]
        generated = GeneratedEnum(
            enum_id=enum_id,
            value_set=value_set.url,
            closed=True,
            members=members,
            doc=value_set.title or value_set.description or display_name,
            version=value_set.version,
        )
        module = GeneratedModule(
            module_id=module_id,
            kind=ModuleKind.VALUE_SET,
            canonical_url=value_set.url,
            version=value_set.version,
            resource_id=value_set.id,
            fhir_name=display_name,
            source_file=self._source_file(value_set.url),
            enums=[generated],
        )
        self._register(value_set, enum_id, module_id, closed=True)
        return module

    def _register(self, value_set: ValueSet, enum_id: Optional[str], module_id: Optional[str], closed: bool) -> None:
        self.resolver.register_binding(value_set.url, enum_id, closed, module_id=module_id)
        if value_set.version:
            self.resolver.register_binding(f"{value_set.url}|{value_set.version}", enum_id, closed, module_id=module_id)

    def _source_file(self, url: Optional[str]) -> Optional[str]:
        if self.specification is None:
            return None
        return self.specification.source_of(url)[0]

    # ------------------------------------------------------------------
    # Concept maps
    # ------------------------------------------------------------------

    def _lower_concept_map(self, concept_map: ConceptMap) -> GeneratedModule:
        display_name = concept_map.name or concept_map.id or (concept_map.url or "concept-map").rsplit("/", 1)[-1]
        module_id = self.names.wire_to_ident(
            concept_map.url or f"ConceptMap.{display_name}", NameKind.MODULE, source=f"ConceptMap.{display_name}",
        )

        table: Dict[Tuple[Optional[str], str], List[ConceptMapTarget]] = {}
        for group in concept_map.group:
            for element in group.element:
                if not element.code:
                    continue
                targets = table.setdefault((group.source, element.code), [])
                for target in element.target or []:
                    targets.append(ConceptMapTarget(
                        system=group.target,
                        code=target.code,
                        relationship=target.relationship or target.equivalence or "related-to",
                        display=target.display,
                    ))

        entries = [
            (key, tuple(targets))
            for key, targets in sorted(table.items(), key=lambda item: (item[0][0] or "", item[0][1]))
        ]
        return GeneratedModule(
            module_id=module_id,
            kind=ModuleKind.CONCEPT_MAP,
            canonical_url=concept_map.url,
            version=concept_map.version,
            resource_id=concept_map.id,
            fhir_name=display_name,
            source_file=self._source_file(concept_map.url),
            concept_maps=[ConceptMapTable(
                name=display_name,
                url=concept_map.url,
                entries=entries,
                doc=concept_map.title or concept_map.description or display_name,
            )],
        )
