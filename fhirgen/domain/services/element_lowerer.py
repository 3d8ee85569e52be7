"""Element Lowerer - one ElementDefinition to zero or more generated fields.

Decision table (first matching rule wins):
    1. Root element: announces the type itself, sets its doc comment
    2. Backbone: the element declares its own children; a nested type is
       allocated and pushed by the structure lowerer
    3. contentReference: a Recursive back-edge to an already lowered element
    4. Polymorphic ``[x]``: one field per variant, sharing a choice group
    5. Sliced element: slicing metadata attached to the field
    6. Bound coded element: required + closed bindings become enumerations
    7. Ordinary element: the single type resolved through the registry

Cardinality:
    0..1 optional, 1..1 scalar, 0..* sequence, 1..* nonempty sequence,
    n..n sequence plus a count() invariant, any..0 prohibited (no field).
    Elements whose base definition repeats stay sequences even when a
    profile narrows them to a single item, so the JSON shape is preserved.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from fhirgen.domain.ir import (
    BackboneRef,
    BindingRef,
    ComplexRef,
    EnumRef,
    FieldShape,
    GeneratedField,
    GeneratedInvariant,
    GeneratedModule,
    GeneratedType,
    OpaqueRef,
    ParentRef,
    PendingRef,
    PolymorphicRef,
    PrimitiveRef,
    RecursiveRef,
    SliceDefinition,
    SlicingInfo,
    TypeKind,
    TypeRef,
)
from fhirgen.domain.ports import BindingResolutionError, PipelineError, TypeResolutionError
from fhirgen.domain.services.name_mapper import NameKind, NameMapper
from fhirgen.domain.services.type_resolver import TypeResolver, is_system_type
from fhirgen.domain.spec_models import ElementDefinition, ElementType, StructureDefinition

logger = logging.getLogger(__name__)

CODED_TYPES = frozenset({"code", "Coding", "CodeableConcept"})
BACKBONE_TYPES = frozenset({"BackboneElement", "Element"})
INVARIANT_ONLY_DISCRIMINATORS = frozenset({"position", "profile", "exists"})


class CardinalityViolation(Exception):
    """min > max, negative min, or non-numeric max on an element.

    Converted to a CardinalityError value by the structure lowerer.
    """

    def __init__(self, message: str, element_path: str):
        super().__init__(message)
        self.element_path = element_path


@dataclass
class Frame:
    """One level of the structure lowerer's context stack."""
    path: str
    generated_type: GeneratedType


@dataclass
class LoweringContext:
    """Surrounding state for lowering the elements of one structure.

    Attributes:
        structure: The StructureDefinition being lowered
        module: The module receiving generated types
        root_type: The structure's own type
        stack: Context stack, bottom frame is the root type
        path_types: element path -> type_id of the type lowered for it
        sliced_fields: element id -> field carrying slicing metadata
        constrained_fields: path of a complex-typed element whose children are
            not lowered -> its field, which collects their fixed and pattern values
        skipped_prefixes: paths whose descendants are not lowered
        diagnostics: Non-fatal errors gathered while lowering
        finalize_pending: Lower unresolved types to opaque instead of deferring
    """
    structure: StructureDefinition
    module: GeneratedModule
    root_type: GeneratedType
    stack: List[Frame] = field(default_factory=list)
    path_types: Dict[str, str] = field(default_factory=dict)
    sliced_fields: Dict[str, GeneratedField] = field(default_factory=dict)
    constrained_fields: Dict[str, GeneratedField] = field(default_factory=dict)
    skipped_prefixes: List[str] = field(default_factory=list)
    diagnostics: List[PipelineError] = field(default_factory=list)
    finalize_pending: bool = False
    source_file: Optional[str] = None

    @property
    def current(self) -> GeneratedType:
        return self.stack[-1].generated_type

    @property
    def url(self) -> Optional[str]:
        return self.structure.url

    def field_scope(self, generated_type: Optional[GeneratedType] = None) -> str:
        return f"field:{(generated_type or self.current).type_id}"

    def is_skipped(self, path: str) -> bool:
        return any(path.startswith(prefix + ".") for prefix in self.skipped_prefixes)

    def warn(self, error: PipelineError) -> None:
        logger.warning(error.describe(), extra={"phase": "lower", "module_id": self.module.module_id,
                                               "element_path": error.element_path})
        self.diagnostics.append(error)


@dataclass
class ElementOutcome:
    """Fields produced for one element, and the backbone type it opened."""
    fields: List[GeneratedField] = field(default_factory=list)
    backbone: Optional[GeneratedType] = None


def parse_cardinality(element: ElementDefinition) -> Tuple[int, Optional[int]]:
    """Validate and parse an element's cardinality.

    Returns:
        (min, max) where max is None for ``*``

    Raises:
        CardinalityViolation: For negative or non-integer min, non-numeric
            max, or min > max
    """
    minimum = element.min if element.min is not None else 0
    if isinstance(minimum, bool) or not isinstance(minimum, int) or minimum < 0:
        raise CardinalityViolation(f"Invalid min cardinality {minimum!r}", element.path)

    raw_max = element.max
    if raw_max is None:
        raw_max = element.base.max if element.base and element.base.max else "*"
    if raw_max == "*":
        maximum = None
    elif raw_max.isdigit():
        maximum = int(raw_max)
    else:
        raise CardinalityViolation(f"Invalid max cardinality {raw_max!r}", element.path)

    if maximum is not None and minimum > maximum:
        raise CardinalityViolation(f"min {minimum} exceeds max {maximum}", element.path)
    return minimum, maximum


def shape_for(element: ElementDefinition, minimum: int, maximum: Optional[int]) -> FieldShape:
    """Map cardinality to a field shape (maximum must not be 0)."""
    base_max = element.base.max if element.base and element.base.max else None
    repeats = maximum is None or maximum >= 2 or (base_max is not None and base_max not in ("0", "1"))
    if not repeats:
        return FieldShape.SCALAR if minimum >= 1 else FieldShape.OPTIONAL
    return FieldShape.NONEMPTY if minimum >= 1 else FieldShape.SEQUENCE


def relative_slice_path(path: str) -> str:
    """Normalize a path relative to a slice (``value[x]`` becomes ``value``)."""
    return ".".join(segment[:-3] if segment.endswith("[x]") else segment for segment in path.split(".") if segment)


class ElementLowerer:
    """Lowers single ElementDefinitions into GeneratedFields.

    Parameters:
        names: Shared name mapper
        resolver: Shared type registry
    """

    def __init__(self, names: NameMapper, resolver: TypeResolver):
        self.names = names
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def lower(self, element: ElementDefinition, context: LoweringContext, has_children: bool = False) -> ElementOutcome:
        """Lower one snapshot element into the current context type.

        Parameters:
            element: The element to lower
            context: Structure-wide lowering state
            has_children: Whether later snapshot elements are nested below it

        Returns:
            ElementOutcome with the fields appended to the current type

        Raises:
            CardinalityViolation: If the element's cardinality is contradictory
            NameCollisionBudgetExceeded: If a naming scope is exhausted
        """
        minimum, maximum = parse_cardinality(element)

        if element.path == context.structure.type:
            self._lower_root(element, context)
            return ElementOutcome()

        if maximum == 0:
            context.skipped_prefixes.append(element.path)
            logger.debug(f"{element.path} is prohibited; no field generated")
            return ElementOutcome()

        shape = shape_for(element, minimum, maximum)
        max_items = maximum if shape.is_sequence else None
        min_items = minimum if shape.is_sequence else 0
        codes = [self.resolver.normalize_code(t) for t in (element.type or [])]

        if has_children and not element.content_reference and (not codes or codes[0] in BACKBONE_TYPES):
            outcome = self._lower_backbone(element, context, shape, min_items, max_items, codes)
        elif has_children:
            # Constraints on the children of a complex-typed element
            context.skipped_prefixes.append(element.path)
            outcome = ElementOutcome(fields=self._lower_typed(element, context, shape, min_items, max_items, minimum))
            if len(outcome.fields) == 1:
                context.constrained_fields[element.path] = outcome.fields[0]
        elif element.content_reference:
            outcome = ElementOutcome(fields=[self._lower_content_reference(element, context, shape, min_items, max_items)])
        else:
            outcome = ElementOutcome(fields=self._lower_typed(element, context, shape, min_items, max_items, minimum))

        owner = outcome.backbone or context.current
        for generated in outcome.fields:
            context.current.add_field(generated)
        self._collect_invariants(element, owner, context)

        if shape.is_sequence and maximum is not None and maximum >= 2 and minimum == maximum:
            wire = outcome.fields[0].wire_name if outcome.fields else element.path.rsplit(".", 1)[-1]
            context.current.add_invariant(GeneratedInvariant(
                key=f"{wire}-count",
                severity="error",
                human=f"{wire} must contain exactly {maximum} items",
                expression=f"{wire}.count() = {maximum}",
                path=element.path,
            ))

        if element.slicing is not None and outcome.fields:
            self._attach_slicing(element, outcome.fields[0], context)
        return outcome

    def lower_slice_element(self, element: ElementDefinition, context: LoweringContext) -> None:
        """Record a slice, or a constraint below a slice, on the sliced field.

        Nested slicing (a slice below a slice) is not recorded.
        """
        parse_cardinality(element)
        segments = element.element_id.split(".")
        position = next(i for i, segment in enumerate(segments) if ":" in segment)
        base_segment, slice_name = segments[position].split(":", 1)
        sliced_id = ".".join(segments[:position] + [base_segment])
        relative = ".".join(segments[position + 1:])
        if ":" in relative or "/" in slice_name:
            return

        sliced_field = context.sliced_fields.get(sliced_id)
        if sliced_field is None or sliced_field.slicing is None:
            logger.debug(f"Slice {element.element_id} has no sliced element in this structure")
            return

        slicing = sliced_field.slicing
        existing = next((s for s in slicing.slices if s.name == slice_name), None)
        definition = existing or SliceDefinition(name=slice_name, min_items=0, max_items=None)

        if not relative:
            minimum, maximum = parse_cardinality(element)
            definition = SliceDefinition(
                name=slice_name,
                min_items=minimum,
                max_items=maximum,
                values=definition.values,
                type_codes=tuple(code for code in (self.resolver.normalize_code(t) for t in element.type or []) if code),
                profiles=tuple(p for t in element.type or [] for p in (t.profile or [])),
            )
        else:
            values = list(definition.values)
            relative = relative_slice_path(relative)
            if element.fixed is not None:
                values.append((relative, "fixed", element.fixed.value))
            elif element.pattern is not None:
                values.append((relative, "pattern", element.pattern.value))
            if any(kind == "exists" and relative_slice_path(path) == relative for kind, path in slicing.discriminators):
                minimum, maximum = parse_cardinality(element)
                if minimum >= 1:
                    values.append((relative, "exists", True))
                elif maximum == 0:
                    values.append((relative, "exists", False))
            definition = SliceDefinition(
                name=definition.name,
                min_items=definition.min_items,
                max_items=definition.max_items,
                values=tuple(values),
                type_codes=definition.type_codes,
                profiles=definition.profiles,
            )

        sliced_field.slicing = slicing.with_slice(definition)

    def lower_constrained_child(self, element: ElementDefinition, context: LoweringContext) -> None:
        """Fold a fixed or pattern value below a complex-typed field into that field."""
        prefixes = [p for p in context.constrained_fields if element.path.startswith(p + ".")]
        if not prefixes:
            return
        prefix = max(prefixes, key=len)
        relative = relative_slice_path(element.path[len(prefix) + 1:])
        generated = context.constrained_fields[prefix]
        for typed, kind in ((element.fixed, "fixed"), (element.pattern, "pattern")):
            if typed is not None:
                generated.nested_values = generated.nested_values + ((relative, kind, typed.value),)

    # ------------------------------------------------------------------
    # Decision table rules
    # ------------------------------------------------------------------

    def _lower_root(self, element: ElementDefinition, context: LoweringContext) -> None:
        root = context.root_type
        if not root.doc:
            root.doc = element.definition or element.short or ""
        self._collect_invariants(element, root, context)

    def _lower_backbone(self, element, context, shape, min_items, max_items, codes) -> ElementOutcome:
        tail = element.path[len(context.structure.type) + 1:]
        type_id = self.names.wire_to_ident(
            f"{context.url}#{element.path}", NameKind.TYPE, source=f"{context.root_type.type_id}.{tail}",
        )
        parent = self._backbone_parent(element, context, codes)
        backbone = GeneratedType(
            type_id=type_id,
            fhir_name=element.path,
            kind=TypeKind.BACKBONE,
            path=element.path,
            doc=element.definition or element.short or "",
            parent=parent,
        )
        if parent is not None:
            self.names.inherit_scope(f"field:{type_id}", f"field:{parent.type_id}")
        context.module.types.append(backbone)
        context.path_types[element.path] = type_id

        wire = element.path.rsplit(".", 1)[-1]
        generated = self._make_field(element, context, wire, shape, BackboneRef(type_id), min_items, max_items)
        return ElementOutcome(fields=[generated], backbone=backbone)

    def _backbone_parent(self, element: ElementDefinition, context: LoweringContext, codes: List[str]) -> Optional[ParentRef]:
        if context.structure.is_profile:
            inherited = self.resolver.lookup_path(element.path)
            if inherited is not None:
                module_id, type_id = inherited
                return ParentRef(type_id=type_id, module_id=module_id, fhir_name=element.path)
        code = codes[0] if codes else "BackboneElement"
        entry = self.resolver.lookup(code)
        if entry is None or entry.category != "complex":
            return None
        return ParentRef(type_id=entry.type_id, module_id=entry.module_id, fhir_name=code)

    def _lower_content_reference(self, element, context, shape, min_items, max_items) -> GeneratedField:
        target = element.content_reference.split("#", 1)[-1]
        type_id = context.path_types.get(target)
        if type_id is None:
            inherited = self.resolver.lookup_path(target)
            type_id = inherited[1] if inherited else None

        if type_id is not None:
            type_ref: TypeRef = RecursiveRef(path=target, type_id=type_id)
        else:
            context.warn(TypeResolutionError(
                message=f"contentReference {element.content_reference} does not name a lowered element",
                file=context.source_file,
                full_url=context.url,
                element_path=element.path,
            ))
            type_ref = OpaqueRef(reason=f"unresolved contentReference {element.content_reference}")

        wire = element.path.rsplit(".", 1)[-1]
        return self._make_field(element, context, wire, shape, type_ref, min_items, max_items)

    def _lower_typed(self, element, context, shape, min_items, max_items, minimum) -> List[GeneratedField]:
        element_types = element.type or []
        wire_base = element.path.rsplit(".", 1)[-1]

        if element.is_choice:
            return self._lower_choice(element, context, shape, min_items, max_items, minimum)

        if not element_types:
            context.warn(TypeResolutionError(
                message="Element declares no type",
                file=context.source_file,
                full_url=context.url,
                element_path=element.path,
            ))
            return [self._make_field(element, context, wire_base, shape, OpaqueRef(reason="untyped element"),
                                     min_items, max_items)]

        if len(element_types) > 1:
            choice = self.resolver.resolve_choice(element_types)
            type_ref = PolymorphicRef(tuple(self._settle(ref, t.code, element, context) for ref, t in zip(choice.variants, element_types)))
            generated = self._make_field(element, context, wire_base, shape, type_ref, min_items, max_items)
            self._attach_values(element, [generated])
            return [generated]

        element_type = element_types[0]
        code = self.resolver.normalize_code(element_type)
        type_ref = self._settle(self.resolver.resolve_type(element_type), code, element, context)
        type_ref, binding = self._apply_binding(element, code, type_ref, context)
        generated = self._make_field(
            element, context, wire_base, shape, type_ref, min_items, max_items,
            binding=binding, element_type=element_type,
        )
        self._attach_values(element, [generated])
        return [generated]

    def _lower_choice(self, element, context, shape, min_items, max_items, minimum) -> List[GeneratedField]:
        element_types = element.type or []
        codes = [self.resolver.normalize_code(t) or "" for t in element_types]
        wires = self.names.expand_choice(element.path, codes)
        group = element.path.rsplit(".", 1)[-1][:-3]
        multiple = len(element_types) > 1

        fields = []
        for element_type, code, wire in zip(element_types, codes, wires):
            type_ref = self._settle(self.resolver.resolve_type(element_type), code, element, context)
            type_ref, binding = self._apply_binding(element, code, type_ref, context)
            variant_shape = FieldShape.OPTIONAL if multiple else shape
            generated = self._make_field(
                element, context, wire, variant_shape, type_ref,
                min_items if not multiple else 0, max_items if not multiple else None,
                binding=binding, element_type=element_type,
            )
            generated.choice_group = group if multiple else None
            generated.choice_required = multiple and minimum >= 1
            fields.append(generated)

        self._attach_values(element, fields, codes)
        return fields

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _settle(self, type_ref: TypeRef, code: Optional[str], element: ElementDefinition, context: LoweringContext) -> TypeRef:
        """Lower a pending reference to opaque once deferral is over."""
        if not isinstance(type_ref, PendingRef) or not context.finalize_pending:
            return type_ref
        context.warn(TypeResolutionError(
            message=f"Type '{code or '?'}' is not defined in the input",
            file=context.source_file,
            full_url=context.url,
            element_path=element.path,
        ))
        return OpaqueRef(reason=f"unknown type {code}")

    def _apply_binding(self, element, code, type_ref, context) -> Tuple[TypeRef, Optional[BindingRef]]:
        binding = element.binding
        if binding is None or not binding.value_set or code not in CODED_TYPES:
            return type_ref, None

        strength = binding.strength or "example"
        enum_ref = self.resolver.enum_ref(binding.value_set)
        if strength == "required" and enum_ref is None:
            context.warn(BindingResolutionError(
                message=f"Required binding to {binding.value_set} is not a closed enumeration; kept as {code}",
                file=context.source_file,
                full_url=context.url,
                element_path=element.path,
            ))

        binding_ref = BindingRef(
            value_set=binding.value_set,
            strength=strength,
            enum_id=enum_ref.enum_id if enum_ref else None,
            module_id=enum_ref.module_id if enum_ref else None,
        )
        if strength == "required" and enum_ref is not None and code == "code":
            return EnumRef(enum_id=enum_ref.enum_id, module_id=enum_ref.module_id), binding_ref
        return type_ref, binding_ref

    def _make_field(self, element: ElementDefinition, context: LoweringContext, wire: str, shape: FieldShape,
                    type_ref: TypeRef, min_items: int, max_items: Optional[int],
                    binding: Optional[BindingRef] = None, element_type: Optional[ElementType] = None) -> GeneratedField:
        scope = context.field_scope()
        name = self.names.wire_to_ident(wire, NameKind.FIELD, scope=scope)
        generated = GeneratedField(
            name=name,
            wire_name=wire,
            shape=shape,
            type_ref=type_ref,
            path=element.path,
            min_items=min_items,
            max_items=max_items,
            binding=binding,
            doc=element.short or "",
            deprecated=element.standards_status() == "deprecated",
        )

        is_primitive = isinstance(type_ref, (PrimitiveRef, EnumRef))
        if is_primitive and element_type is not None and not is_system_type(element_type.code):
            generated.primitive_extension = True
            generated.extension_name = self.names.wire_to_ident(f"_{wire}", NameKind.FIELD, scope=scope)
            entry = self.resolver.lookup("Element")
            if entry is not None and entry.category == "complex":
                generated.extension_type_ref = ComplexRef(name="Element", module_id=entry.module_id, type_id=entry.type_id)
            else:
                generated.extension_type_ref = OpaqueRef(reason="Element is not defined in the input")
        return generated

    def _attach_values(self, element: ElementDefinition, fields: List[GeneratedField], codes: Optional[List[str]] = None) -> None:
        """Attach fixed[x] / pattern[x] to the field (or choice variant) they constrain."""
        for typed, attribute in ((element.fixed, "fixed"), (element.pattern, "pattern")):
            if typed is None:
                continue
            target = fields[0] if fields else None
            if codes and len(fields) > 1:
                target = next((f for f, code in zip(fields, codes) if typed.matches_code(code)), None)
            if target is not None:
                setattr(target, attribute, typed.value)

    def _attach_slicing(self, element: ElementDefinition, generated: GeneratedField, context: LoweringContext) -> None:
        slicing = element.slicing
        discriminators = tuple((d.type, d.path) for d in slicing.discriminator)
        generated.slicing = SlicingInfo(
            discriminators=discriminators,
            rules=slicing.rules or "open",
            ordered=bool(slicing.ordered),
        )
        context.sliced_fields[element.element_id] = generated
        for kind, path in discriminators:
            if kind in INVARIANT_ONLY_DISCRIMINATORS:
                context.current.add_invariant(GeneratedInvariant(
                    key=f"{generated.wire_name}-slicing-{kind}",
                    severity="error",
                    human=f"Slices of {generated.wire_name} are discriminated by {kind} at '{path}'",
                    expression=None,
                    path=element.path,
                ))

    def _collect_invariants(self, element: ElementDefinition, owner: GeneratedType, context: LoweringContext) -> None:
        for constraint in element.constraint or []:
            owner.add_invariant(GeneratedInvariant(
                key=constraint.key,
                severity=constraint.severity or "error",
                human=constraint.human or "",
                expression=constraint.expression,
                path=element.path,
            ))
