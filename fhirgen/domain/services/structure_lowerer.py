"""Structure Lowerer - one StructureDefinition to one GeneratedModule.

Walks the snapshot element list once, maintaining a stack of the types
currently being populated, and delegates each element to the element
lowerer.

Kinds:
    - primitive-type: no module; the primitive is registered as an alias
    - complex-type / resource: one module, root type plus its backbones
    - constraint (profile): a distinct type that specializes its base
    - logical: skipped

Snapshot order:
    Elements must arrive in depth-first pre-order. An element whose parent
    path is not on the context stack is a SnapshotOrderError.
"""

import logging
from typing import List, Optional, Set, Tuple

from fhirgen.domain.ir import GeneratedModule, GeneratedType, ModuleKind, ParentRef, PrimitiveKind, TypeKind
from fhirgen.domain.ports import (
    CardinalityError,
    MissingSnapshotError,
    NameCollisionError,
    PipelineError,
    Result,
    SnapshotOrderError,
    TypeResolutionError,
)
from fhirgen.domain.services.element_lowerer import (
    CardinalityViolation,
    ElementLowerer,
    Frame,
    LoweringContext,
)
from fhirgen.domain.services.name_mapper import NameCollisionBudgetExceeded, NameKind, NameMapper
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.spec_models import ElementDefinition, StructureDefinition

logger = logging.getLogger(__name__)

LOWERED_KINDS = frozenset({"complex-type", "resource"})


class SnapshotOrderViolation(Exception):
    """An element's parent is not on the context stack."""

    def __init__(self, message: str, element_path: str):
        super().__init__(message)
        self.element_path = element_path


def structure_key(structure: StructureDefinition) -> str:
    """Stable naming key of a structure: its canonical URL, else its name."""
    return structure.url or structure.name or structure.type


def structure_name(structure: StructureDefinition) -> str:
    return structure.name or structure.type


class StructureLowerer:
    """Lowers StructureDefinitions into sealed-ready GeneratedModules.

    Parameters:
        names: Shared name mapper
        resolver: Shared type registry
        element_lowerer: Element lowerer (created from names/resolver if omitted)
    """

    def __init__(self, names: NameMapper, resolver: TypeResolver,
                 element_lowerer: Optional[ElementLowerer] = None):
        self.names = names
        self.resolver = resolver
        self.element_lowerer = element_lowerer or ElementLowerer(names, resolver)

    # ------------------------------------------------------------------
    # Declaration
    # ------------------------------------------------------------------

    def declare_primitive(self, structure: StructureDefinition) -> Optional[PipelineError]:
        """Register a primitive-type structure; unknown primitives fall back to string."""
        kind = PrimitiveKind.from_code(structure.type)
        warning = None
        if kind is None:
            kind = PrimitiveKind.STRING
            warning = TypeResolutionError(
                message=f"Unknown primitive type '{structure.type}' treated as string",
                full_url=structure.url,
            )
        self.resolver.register_primitive(structure.type, kind, structure.url)
        return warning

    def declare(self, structure: StructureDefinition) -> Tuple[str, str]:
        """Allocate identifiers for a structure and register a placeholder.

        Self references and forward references resolve from this point on;
        the type is sealed once lowering finishes.

        Returns:
            (module_id, type_id)

        Raises:
            NameCollisionBudgetExceeded: If the type or module scope is exhausted
        """
        key = structure_key(structure)
        name = structure_name(structure)
        type_id = self.names.wire_to_ident(key, NameKind.TYPE, source=name)
        module_id = self.names.wire_to_ident(key, NameKind.MODULE, source=name)
        category = "resource" if structure.kind == "resource" else "complex"

        if structure.is_profile:
            self.resolver.register_profile(structure.url or key, structure.type, module_id, type_id, category)
        elif category == "resource":
            self.resolver.register_resource(structure.type, module_id, type_id, structure.url, structure.abstract)
        else:
            self.resolver.register_complex(structure.type, module_id, type_id, structure.url, structure.abstract)
        return module_id, type_id

    def parent_key(self, structure: StructureDefinition) -> Optional[str]:
        """Registry key the structure waits on before it can be lowered."""
        if not structure.base_definition:
            return None
        entry = self.resolver.lookup_url(structure.base_definition)
        if entry is None:
            return structure.base_definition.split("|", 1)[0]
        return entry.url or entry.fhir_name

    def dependencies(self, structure: StructureDefinition) -> Set[str]:
        """Registry keys that must be sealed first: the base parent and backbone bases."""
        keys: Set[str] = set()
        parent = self.parent_key(structure)
        if parent:
            keys.add(parent)
        elements = structure.snapshot.element if structure.snapshot else []
        for element in elements:
            for code in element.type_codes:
                if code in ("BackboneElement", "Element") and code != structure.type:
                    entry = self.resolver.lookup(code)
                    keys.add(entry.url if entry and entry.url else code)
        keys.discard(structure.url)
        return keys

    def seal_key(self, structure: StructureDefinition) -> str:
        return structure.url or structure.type

    # ------------------------------------------------------------------
    # Lowering
    # ------------------------------------------------------------------

    def lower(self, structure: StructureDefinition, finalize_pending: bool = False,
              source_file: Optional[str] = None) -> Result[GeneratedModule]:
        """Lower one declared StructureDefinition.

        Parameters:
            structure: A complex-type, resource or constraint structure
            finalize_pending: Lower still-unknown types to opaque values
            source_file: Bundle file the structure came from

        Returns:
            Result[GeneratedModule]: The unsealed module with its diagnostics,
            or a failure carrying a CardinalityError, SnapshotOrderError,
            MissingSnapshotError or NameCollisionError
        """
        if not structure.snapshot or not structure.snapshot.element:
            return Result.failure_result(MissingSnapshotError(
                message=f"StructureDefinition {structure_name(structure)} has no snapshot; skipped",
                file=source_file,
                full_url=structure.url,
            ))

        try:
            module_id, type_id = self.declare(structure)
            context = self._start(structure, module_id, type_id, finalize_pending, source_file)
            self._walk(structure.snapshot.element, context)
        except CardinalityViolation as exc:
            return Result.failure_result(CardinalityError(
                message=str(exc), file=source_file, full_url=structure.url, element_path=exc.element_path,
            ))
        except SnapshotOrderViolation as exc:
            return Result.failure_result(SnapshotOrderError(
                message=str(exc), file=source_file, full_url=structure.url, element_path=exc.element_path,
            ))
        except NameCollisionBudgetExceeded as exc:
            return Result.failure_result(NameCollisionError(
                message=str(exc), file=source_file, full_url=structure.url,
            ))

        logger.debug(
            f"Lowered {structure_name(structure)}: {len(context.module.types)} types, "
            f"{len(context.diagnostics)} diagnostics"
        )
        return Result.success_result(context.module, diagnostics=context.diagnostics)

    def register_paths(self, module: GeneratedModule, structure: StructureDefinition) -> None:
        """Publish element paths of a base structure for contentReference and profile backbones."""
        if structure.is_profile:
            return
        for generated_type in module.types:
            self.resolver.register_path(generated_type.path, module.module_id, generated_type.type_id)

    def _start(self, structure: StructureDefinition, module_id: str, type_id: str,
               finalize_pending: bool, source_file: Optional[str]) -> LoweringContext:
        parent = self._root_parent(structure)
        if parent is not None:
            self.names.inherit_scope(f"field:{type_id}", f"field:{parent.type_id}")

        root = GeneratedType(
            type_id=type_id,
            fhir_name=structure.type,
            kind=TypeKind.RESOURCE if structure.kind == "resource" else TypeKind.COMPLEX,
            path=structure.type,
            doc=structure.description or structure.title or "",
            parent=parent,
            abstract=structure.abstract,
            profile_url=structure.url if structure.is_profile else None,
            canonical_url=structure.url,
        )
        module = GeneratedModule(
            module_id=module_id,
            kind=ModuleKind.STRUCTURE,
            canonical_url=structure.url,
            version=structure.version,
            resource_id=structure.id,
            fhir_name=structure_name(structure),
            source_file=source_file,
            types=[root],
        )
        context = LoweringContext(
            structure=structure,
            module=module,
            root_type=root,
            finalize_pending=finalize_pending,
            source_file=source_file,
        )
        context.stack.append(Frame(path=structure.type, generated_type=root))
        context.path_types[structure.type] = type_id
        return context

    def _root_parent(self, structure: StructureDefinition) -> Optional[ParentRef]:
        entry = self.resolver.lookup_url(structure.base_definition)
        if entry is None or entry.type_id is None:
            return None
        return ParentRef(type_id=entry.type_id, module_id=entry.module_id, fhir_name=entry.fhir_name)

    def _walk(self, elements: List[ElementDefinition], context: LoweringContext) -> None:
        parent_paths = {e.path.rsplit(".", 1)[0] for e in elements if not e.in_slice and "." in e.path}

        for element in elements:
            if element.in_slice:
                if not context.is_skipped(element.path):
                    self.element_lowerer.lower_slice_element(element, context)
                continue
            if context.is_skipped(element.path):
                self.element_lowerer.lower_constrained_child(element, context)
                continue

            if element.path != context.structure.type:
                self._position(element, context)

            outcome = self.element_lowerer.lower(element, context, has_children=element.path in parent_paths)
            if outcome.backbone is not None:
                context.stack.append(Frame(path=element.path, generated_type=outcome.backbone))

    def _position(self, element: ElementDefinition, context: LoweringContext) -> None:
        """Pop the context stack until the element's parent is on top."""
        parent_path = element.path.rsplit(".", 1)[0] if "." in element.path else ""
        while len(context.stack) > 1:
            top = context.stack[-1].path
            if parent_path == top or parent_path.startswith(top + "."):
                break
            context.stack.pop()
        if context.stack[-1].path != parent_path:
            raise SnapshotOrderViolation(
                f"Parent '{parent_path}' of '{element.path}' is not on the context stack",
                element.path,
            )
