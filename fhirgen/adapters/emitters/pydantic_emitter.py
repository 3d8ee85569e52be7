"""Pydantic emitter adapter.

Renders sealed IR modules as Python source defining pydantic v2 models.

Output layout:
    - One module per structure, value set, concept map
    - ``search_parameters.py`` with the search-parameter index
    - ``_base.py``: the runtime support module, copied verbatim
    - ``__init__.py``: lists every module and resolves forward references

Cross-module references:
    Every generated module uses ``from __future__ import annotations``, so
    annotations naming types of other modules stay strings until the index
    calls ``rebuild_models``. Modules import only their parent classes and
    the enumerations they use, which keeps the import graph acyclic.

Error handling:
    IR that violates the emitter's preconditions (pending references, empty
    choices, unsealed modules, duplicate identifiers) is reported as a fatal
    EmissionError.
"""

import logging
from dataclasses import dataclass, field
from importlib import resources
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from fhirgen import __version__
from fhirgen.domain.ir import (
    BackboneRef,
    ComplexRef,
    EnumRef,
    FieldShape,
    GeneratedField,
    GeneratedModule,
    GeneratedType,
    GenerationIndex,
    ModuleKind,
    OpaqueRef,
    PendingRef,
    PolymorphicRef,
    PrimitiveRef,
    RecursiveRef,
    ResourceRef,
    TypeKind,
    TypeRef,
)
from fhirgen.domain.ports import EmissionError, EmittedFile, EmitterPort, PipelineError, Result, TypeResolutionError
from fhirgen.domain.services.name_mapper import upper_first

logger = logging.getLogger(__name__)

GENERATED_MARKER = "# Generated by fhirgen"
DEFAULT_SPECIFICATION_BASE_URL = "http://hl7.org/fhir/R5"
RUNTIME_MODULE = "_base"
INDEX_MODULE = "__init__"

TYPING_NAMES = ("Any", "Dict", "List", "Optional", "Tuple", "Union")


class EmissionViolation(Exception):
    """IR handed to the emitter breaks one of its preconditions."""


def primitive_alias(type_ref: PrimitiveRef) -> str:
    """Runtime alias name for a primitive (``dateTime`` -> ``FhirDateTime``)."""
    return f"Fhir{upper_first(type_ref.kind.value)}"


def docstring(text: str, indent: str = "") -> List[str]:
    """Render text as a docstring, escaping what would end it early."""
    cleaned = (text or "").strip().replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    if not cleaned:
        return []
    lines = cleaned.splitlines()
    if len(lines) == 1 and len(cleaned) < 90 and not cleaned.endswith('"'):
        return [f'{indent}"""{cleaned}"""']
    rendered = [f'{indent}"""']
    rendered.extend(f"{indent}{line.rstrip()}" if line.strip() else "" for line in lines)
    rendered.append(f'{indent}"""')
    return rendered


def literal(value: Any) -> str:
    """Python literal for a JSON value (dict order preserved)."""
    return repr(value)


@dataclass
class FieldSpec:
    """A rendered field declaration."""
    name: str
    wire_name: str
    annotation: str
    arguments: List[Tuple[str, str]]

    @property
    def signature(self) -> Tuple[str, str, Tuple[Tuple[str, str], ...]]:
        """Everything that decides whether a subclass must re-declare the field."""
        return self.name, self.annotation, tuple(a for a in self.arguments if a[0] != "description")

    def render(self, indent: str = "    ") -> List[str]:
        lines = [f"{indent}{self.name}: {self.annotation} = Field("]
        for key, value in self.arguments:
            lines.append(f"{indent}    {value}," if key == "default" else f"{indent}    {key}={value},")
        lines.append(f"{indent})")
        return lines


@dataclass
class RenderState:
    """Imports and diagnostics collected while rendering one module."""
    module: GeneratedModule
    index: GenerationIndex
    base_names: Set[str] = field(default_factory=set)
    typing_names: Set[str] = field(default_factory=set)
    module_imports: Dict[str, Set[str]] = field(default_factory=dict)
    diagnostics: List[PipelineError] = field(default_factory=list)

    def use(self, name: str) -> str:
        if name in TYPING_NAMES:
            self.typing_names.add(name)
        else:
            self.base_names.add(name)
        return name

    def import_from(self, module_id: str, name: str) -> None:
        if module_id != self.module.module_id:
            self.module_imports.setdefault(module_id, set()).add(name)


class PydanticEmitter(EmitterPort):
    """Emits pydantic v2 models from sealed IR.

    Parameters:
        specification_base_url: Base URL for the specification pointer in headers
        generator_version: Version recorded in file headers

    Example:
        ```python
        emitter = PydanticEmitter()
        result = emitter.emit_module(module, index)
        if result.is_success():
            print(result.value.path)   # "patient.py"
        ```
    """

    def __init__(self, specification_base_url: str = DEFAULT_SPECIFICATION_BASE_URL,
                 generator_version: str = __version__):
        self.specification_base_url = specification_base_url.rstrip("/")
        self.generator_version = generator_version

    # ------------------------------------------------------------------
    # Port implementation
    # ------------------------------------------------------------------

    def emit_module(self, module: GeneratedModule, index: GenerationIndex) -> Result[EmittedFile]:
        """Render one sealed module.

        Returns:
            Result[EmittedFile]: ``<module_id>.py``, or a failure carrying an EmissionError
        """
        state = RenderState(module=module, index=index)
        try:
            if not module.sealed:
                raise EmissionViolation(f"Module {module.module_id} is not sealed")
            if module.kind == ModuleKind.STRUCTURE:
                body = self._render_structure(state)
            elif module.kind == ModuleKind.VALUE_SET:
                body = self._render_value_set(state)
            elif module.kind == ModuleKind.CONCEPT_MAP:
                body = self._render_concept_map(state)
            else:
                body = self._render_search_index(state)
        except EmissionViolation as exc:
            return Result.failure_result(
                EmissionError(message=str(exc), file=module.source_file, full_url=module.canonical_url),
                diagnostics=state.diagnostics,
            )

        content = "\n".join(self._header(module, index) + body) + "\n"
        logger.debug(f"Emitted {module.module_id}.py ({len(content)} bytes)")
        return Result.success_result(EmittedFile(path=f"{module.module_id}.py", content=content),
                                     diagnostics=state.diagnostics)

    def emit_support_files(self, modules: Sequence[GeneratedModule],
                           index: GenerationIndex) -> Result[List[EmittedFile]]:
        """Render ``_base.py`` and the ``__init__.py`` index."""
        try:
            runtime = resources.files("fhirgen.runtime").joinpath("fhir_base.py").read_text(encoding="utf-8")
        except OSError as exc:
            return Result.failure_result(EmissionError(message=f"Runtime support module unavailable: {exc}"))

        header = [
            f"{GENERATED_MARKER} {self.generator_version}. Do not edit.",
            f"# FHIR version: {index.fhir_version or '-'}",
            "",
        ]
        base_file = EmittedFile(path=f"{RUNTIME_MODULE}.py", content="\n".join(header) + runtime)

        module_ids = sorted(m.module_id for m in modules)
        lines = header + docstring(f"FHIR {index.fhir_version or ''} models generated by fhirgen.".replace("  ", " "))
        lines += [
            "",
            "from ._base import AnyResource, FhirEnum, FhirModel, FhirResource, parse_resource, rebuild_models",
            "",
            f"FHIR_VERSION = {literal(index.fhir_version)}",
            "",
            "GENERATED_MODULES = (",
        ]
        lines += [f"    {literal(module_id)}," for module_id in module_ids]
        lines += [
            ")",
            "",
            "MODELS = rebuild_models(__name__, GENERATED_MODULES)",
            "",
            "",
            "def __getattr__(name):",
            "    try:",
            "        return MODELS[name]",
            "    except KeyError:",
            "        raise AttributeError(f\"module {__name__!r} has no attribute {name!r}\") from None",
            "",
            "",
            "__all__ = [",
            '    "AnyResource", "FHIR_VERSION", "FhirEnum", "FhirModel", "FhirResource",',
            '    "GENERATED_MODULES", "MODELS", "parse_resource",',
            "]",
        ]
        index_file = EmittedFile(path=f"{INDEX_MODULE}.py", content="\n".join(lines) + "\n")
        return Result.success_result([base_file, index_file])

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _header(self, module: GeneratedModule, index: GenerationIndex) -> List[str]:
        return [
            f"{GENERATED_MARKER} {self.generator_version}. Do not edit.",
            f"# Canonical URL: {module.canonical_url or '-'}",
            f"# Version: {module.version or '-'}",
            f"# FHIR version: {index.fhir_version or '-'}",
            f"# Specification: {self.specification_base_url}/{self._page(module)}",
        ]

    @staticmethod
    def _page(module: GeneratedModule) -> str:
        resource_id = module.resource_id or (module.fhir_name or module.module_id).lower()
        if module.kind == ModuleKind.VALUE_SET:
            return f"valueset-{resource_id}.html"
        if module.kind == ModuleKind.CONCEPT_MAP:
            return f"conceptmap-{resource_id}.html"
        if module.kind == ModuleKind.SEARCH_INDEX:
            return "searchparameter-registry.html"
        root = module.root_type
        if root is not None and root.profile_url:
            return f"{resource_id}.html"
        return f"{(root.fhir_name if root else resource_id).lower()}.html"

    @staticmethod
    def _preamble(title: str, state: RenderState, extra: Sequence[str] = ()) -> List[str]:
        lines = [""] + docstring(title) + ["", "from __future__ import annotations", ""]
        if state.typing_names:
            lines.append(f"from typing import {', '.join(sorted(state.typing_names))}")
            lines.append("")
        lines.extend(extra)
        if state.base_names:
            names = sorted(state.base_names)
            lines.append("from ._base import (")
            lines.extend(f"    {name}," for name in names)
            lines.append(")")
        for module_id in sorted(state.module_imports):
            lines.append(f"from .{module_id} import {', '.join(sorted(state.module_imports[module_id]))}")
        return lines

    # ------------------------------------------------------------------
    # Structures
    # ------------------------------------------------------------------

    def _render_structure(self, state: RenderState) -> List[str]:
        module = state.module
        if not module.types:
            raise EmissionViolation(f"Structure module {module.module_id} has no types")

        classes: List[str] = []
        for generated_type in module.types:
            classes += ["", ""] + self._render_class(generated_type, state)

        root = module.types[0]
        title = f"{root.fhir_name}" + (f" profile {module.fhir_name}" if root.profile_url else "")
        uses_field = any(line.lstrip().endswith("= Field(") for line in classes)
        extra = ["from pydantic import Field", ""] if uses_field else []
        return self._preamble(title, state, extra) + classes

    def _same_family(self, child: GeneratedType, parent: GeneratedType) -> bool:
        if child.kind == TypeKind.RESOURCE:
            return parent.kind == TypeKind.RESOURCE
        return parent.kind in (TypeKind.COMPLEX, TypeKind.BACKBONE)

    def _parent_type(self, generated_type: GeneratedType, index: GenerationIndex) -> Optional[GeneratedType]:
        if generated_type.parent is None:
            return None
        parent = index.lookup_type(generated_type.parent.type_id)
        if parent is None or parent.type_id == generated_type.type_id or not self._same_family(generated_type, parent):
            return None
        return parent

    def _field_specs(self, generated_type: GeneratedType, state: RenderState) -> List[FieldSpec]:
        specs: List[FieldSpec] = []
        for generated in generated_type.fields:
            specs.extend(self._render_field(generated, state))
        seen: Dict[str, str] = {}
        for spec in specs:
            if spec.name in seen and seen[spec.name] != spec.wire_name:
                raise EmissionViolation(
                    f"{generated_type.type_id}: '{spec.wire_name}' and '{seen[spec.name]}' share identifier '{spec.name}'"
                )
            seen[spec.name] = spec.wire_name
        return specs

    def _effective_specs(self, generated_type: GeneratedType, state: RenderState) -> Dict[str, FieldSpec]:
        """Fields a class ends up with, inherited ones included (wire name -> spec)."""
        parent = self._parent_type(generated_type, state.index)
        effective = dict(self._effective_specs(parent, self._scratch(state))) if parent else {}
        for spec in self._field_specs(generated_type, self._scratch(state)):
            effective[spec.wire_name] = spec
        return effective

    @staticmethod
    def _scratch(state: RenderState) -> RenderState:
        """A throwaway state so inspecting ancestors does not add imports."""
        return RenderState(module=state.module, index=state.index)

    def _render_class(self, generated_type: GeneratedType, state: RenderState) -> List[str]:
        index = state.index
        parent = self._parent_type(generated_type, index)
        if parent is not None:
            base_name = parent.type_id
            parent_module = index.types[parent.type_id][0]
            state.import_from(parent_module, base_name)
        else:
            base_name = state.use("FhirResource" if generated_type.kind == TypeKind.RESOURCE else "FhirModel")

        inherited = self._effective_specs(parent, self._scratch(state)) if parent else {}
        own = self._field_specs(generated_type, state)
        own_wires = {spec.wire_name for spec in own}

        body: List[str] = docstring(self._class_doc(generated_type), "    ")
        class_vars = self._class_vars(generated_type, parent, inherited, own_wires, state)
        if class_vars:
            body += [""] if body else []
            body += class_vars

        declared = [spec for spec in own
                    if spec.wire_name not in inherited or inherited[spec.wire_name].signature != spec.signature]
        for spec in declared:
            body += [""] + spec.render() if body else spec.render()
        if not body:
            body = ["    pass"]
        return [f"class {generated_type.type_id}({base_name}):"] + body

    @staticmethod
    def _class_doc(generated_type: GeneratedType) -> str:
        doc = generated_type.doc or generated_type.fhir_name
        if generated_type.profile_url and generated_type.kind != TypeKind.BACKBONE:
            doc = f"{doc}\n\nProfile: {generated_type.profile_url}"
        return doc

    def _class_vars(self, generated_type: GeneratedType, parent: Optional[GeneratedType],
                    inherited: Dict[str, FieldSpec], own_wires: Set[str], state: RenderState) -> List[str]:
        rules = self._rules(generated_type, state)
        parent_rules = self._rules(parent, self._scratch(state)) if parent else {}

        prohibited = sorted(spec.name for wire, spec in inherited.items() if wire not in own_wires)
        parent_prohibited = self._prohibited(parent, state) if parent else []

        lines = [f"    fhir_type_name = {literal(generated_type.fhir_name)}"]
        if generated_type.kind != TypeKind.BACKBONE:
            lines.append(f"    fhir_url = {literal(generated_type.canonical_url)}")
            lines.append(f"    fhir_abstract = {generated_type.abstract}")
        if generated_type.profile_url and generated_type.kind != TypeKind.BACKBONE:
            lines.append(f"    fhir_profile = {literal(generated_type.profile_url)}")

        for name in ("fhir_choice_groups", "fhir_slicing", "fhir_fixed", "fhir_patterns",
                     "fhir_bindings", "fhir_invariants"):
            value = rules.get(name)
            if value is None and parent_rules.get(name) is None:
                continue
            lines.extend(self._render_rule(name, value, state))
        if prohibited or parent_prohibited:
            lines.append(f"    fhir_prohibited = {literal(tuple(prohibited))}")
        return lines

    def _prohibited(self, generated_type: GeneratedType, state: RenderState) -> List[str]:
        parent = self._parent_type(generated_type, state.index)
        if parent is None:
            return []
        inherited = self._effective_specs(parent, self._scratch(state))
        own = {spec.wire_name for spec in self._field_specs(generated_type, self._scratch(state))}
        return sorted(spec.name for wire, spec in inherited.items() if wire not in own)

    def _rules(self, generated_type: GeneratedType, state: RenderState) -> Dict[str, Any]:
        """Collect the validator metadata of a type; empty rules are omitted."""
        groups: Dict[str, Tuple[List[str], bool]] = {}
        slicing, fixed, patterns, bindings = [], {}, {}, []
        for generated in generated_type.fields:
            if generated.choice_group:
                names, required = groups.setdefault(generated.choice_group, ([], False))
                names.append(generated.name)
                groups[generated.choice_group] = (names, required or generated.choice_required)
            if generated.slicing is not None:
                slicing.append((generated.name, generated.slicing))
            if generated.has_fixed:
                fixed[generated.name] = generated.fixed
            if generated.has_pattern:
                patterns[generated.name] = generated.pattern
            for relative, kind, value in generated.nested_values:
                (fixed if kind == "fixed" else patterns)[f"{generated.name}.{relative}"] = value
            if generated.binding is not None:
                bindings.append((generated.name, generated.binding))

        rules: Dict[str, Any] = {}
        if groups:
            rules["fhir_choice_groups"] = groups
        if slicing:
            rules["fhir_slicing"] = slicing
        if fixed:
            rules["fhir_fixed"] = fixed
        if patterns:
            rules["fhir_patterns"] = patterns
        if bindings:
            rules["fhir_bindings"] = bindings
        if generated_type.invariants:
            rules["fhir_invariants"] = list(generated_type.invariants)
        return rules

    def _render_rule(self, name: str, value: Any, state: RenderState) -> List[str]:
        if value is None:
            return [f"    {name} = {{}}" if name in ("fhir_fixed", "fhir_patterns") else f"    {name} = ()"]

        if name in ("fhir_fixed", "fhir_patterns"):
            lines = [f"    {name} = {{"]
            lines += [f"        {literal(key)}: {literal(item)}," for key, item in value.items()]
            return lines + ["    }"]

        lines = [f"    {name} = ("]
        if name == "fhir_choice_groups":
            state.use("ChoiceGroup")
            for group, (names, required) in value.items():
                lines.append(f"        ChoiceGroup({literal(group)}, {literal(tuple(names))}, required={required}),")
        elif name == "fhir_slicing":
            state.use("SlicingRule")
            for field_name, info in value:
                lines.append("        SlicingRule(")
                lines.append(f"            field_name={literal(field_name)},")
                lines.append(f"            discriminators={literal(tuple(info.discriminators))},")
                lines.append(f"            rules={literal(info.rules)},")
                lines.append(f"            ordered={info.ordered},")
                if info.slices:
                    state.use("Slice")
                    lines.append("            slices=(")
                    for item in info.slices:
                        lines.append(
                            f"                Slice({literal(item.name)}, min_items={item.min_items}, "
                            f"max_items={item.max_items}, values={literal(tuple(item.values))}, "
                            f"type_codes={literal(item.type_codes)}, profiles={literal(item.profiles)}),"
                        )
                    lines.append("            ),")
                lines.append("        ),")
        elif name == "fhir_bindings":
            state.use("Binding")
            for field_name, binding in value:
                enum_name = binding.enum_id if binding.enum_id in state.index.enums else None
                lines.append(
                    f"        Binding({literal(field_name)}, {literal(binding.value_set)}, "
                    f"{literal(binding.strength)}, enum={literal(enum_name)}),"
                )
        else:
            state.use("Invariant")
            for invariant in value:
                lines.append(
                    f"        Invariant({literal(invariant.key)}, {literal(invariant.severity)}, "
                    f"{literal(invariant.human)}, expression={literal(invariant.expression)}, "
                    f"path={literal(invariant.path)}),"
                )
        return lines + ["    )"]

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def _render_field(self, generated: GeneratedField, state: RenderState) -> List[FieldSpec]:
        inner = self._type_expression(generated.type_ref, generated, state)
        item = inner
        if generated.primitive_extension and generated.shape.is_sequence:
            item = f"{state.use('Optional')}[{inner}]"

        if generated.shape == FieldShape.SCALAR:
            annotation = inner
        elif generated.shape == FieldShape.OPTIONAL:
            annotation = f"{state.use('Optional')}[{inner}]"
        elif generated.shape == FieldShape.SEQUENCE:
            annotation = f"{state.use('Optional')}[{state.use('List')}[{item}]]"
        else:
            annotation = f"{state.use('List')}[{item}]"

        arguments: List[Tuple[str, str]] = []
        fixed_default = (
            generated.shape == FieldShape.SCALAR
            and isinstance(generated.fixed, (str, int, float, bool))
        )
        if fixed_default:
            arguments.append(("default", literal(generated.fixed)))
        elif generated.shape.is_required:
            arguments.append(("default", "..."))
        else:
            arguments.append(("default", "None"))
        arguments.append(("alias", literal(generated.wire_name)))
        if generated.shape.is_sequence:
            if generated.min_items > 0:
                arguments.append(("min_length", str(generated.min_items)))
            if generated.max_items is not None:
                arguments.append(("max_length", str(generated.max_items)))
        description = generated.doc or ""
        if generated.deprecated:
            description = f"[DEPRECATED] {description}".rstrip()
        if description:
            arguments.append(("description", literal(description)))
        if fixed_default:
            arguments.append(("validate_default", "True"))
        target_profiles = self._target_profiles(generated.type_ref)
        if target_profiles:
            arguments.append(("json_schema_extra", literal({"targetProfile": list(target_profiles)})))

        specs = [FieldSpec(generated.name, generated.wire_name, annotation, arguments)]
        if generated.primitive_extension and generated.extension_name:
            specs.append(self._sidecar(generated, state))
        return specs

    def _sidecar(self, generated: GeneratedField, state: RenderState) -> FieldSpec:
        element = self._type_expression(generated.extension_type_ref or OpaqueRef("no Element type"), generated, state)
        optional = state.use("Optional")
        if generated.shape.is_sequence:
            annotation = f"{optional}[{state.use('List')}[{optional}[{element}]]]"
        else:
            annotation = f"{optional}[{element}]"
        return FieldSpec(
            generated.extension_name,
            f"_{generated.wire_name}",
            annotation,
            [("default", "None"), ("alias", literal(f"_{generated.wire_name}")),
             ("description", literal(f"Extensions for {generated.wire_name}"))],
        )

    @staticmethod
    def _target_profiles(type_ref: TypeRef) -> Tuple[str, ...]:
        if isinstance(type_ref, ComplexRef):
            return type_ref.target_profiles
        if isinstance(type_ref, PolymorphicRef):
            found: List[str] = []
            for variant in type_ref.variants:
                for profile in PydanticEmitter._target_profiles(variant):
                    if profile not in found:
                        found.append(profile)
            return tuple(found)
        return ()

    def _type_expression(self, type_ref: TypeRef, generated: GeneratedField, state: RenderState) -> str:
        if isinstance(type_ref, PrimitiveRef):
            return state.use(primitive_alias(type_ref))
        if isinstance(type_ref, PendingRef):
            raise EmissionViolation(f"Unresolved type '{type_ref.code}' reached emission at {generated.path}")
        if isinstance(type_ref, OpaqueRef):
            return state.use("Any")
        if isinstance(type_ref, EnumRef):
            module_id = state.index.enums.get(type_ref.enum_id)
            if module_id is None:
                self._missing(state, f"Enumeration {type_ref.enum_id} was not generated", generated)
                return state.use("FhirCode")
            state.import_from(module_id, type_ref.enum_id)
            return type_ref.enum_id
        if isinstance(type_ref, ResourceRef) and type_ref.abstract:
            return state.use("AnyResource")
        if isinstance(type_ref, PolymorphicRef):
            if not type_ref.variants:
                raise EmissionViolation(f"Empty choice at {generated.path}")
            variants: List[str] = []
            for variant in type_ref.variants:
                rendered = self._type_expression(variant, generated, state)
                if rendered not in variants:
                    variants.append(rendered)
            if len(variants) == 1:
                return variants[0]
            return f"{state.use('Union')}[{', '.join(variants)}]"
        if isinstance(type_ref, (ComplexRef, ResourceRef, BackboneRef, RecursiveRef)):
            if type_ref.type_id not in state.index.types:
                self._missing(state, f"Type {type_ref.type_id} was not generated", generated)
                return state.use("Any")
            return type_ref.type_id
        raise EmissionViolation(f"Unsupported type reference {type_ref!r} at {generated.path}")

    @staticmethod
    def _missing(state: RenderState, message: str, generated: GeneratedField) -> None:
        error = TypeResolutionError(
            message=f"{message}; field typed as an opaque value",
            file=state.module.source_file,
            full_url=state.module.canonical_url,
            element_path=generated.path,
        )
        if error not in state.diagnostics:
            state.diagnostics.append(error)

    # ------------------------------------------------------------------
    # Terminology and search index
    # ------------------------------------------------------------------

    def _render_value_set(self, state: RenderState) -> List[str]:
        module = state.module
        if len(module.enums) != 1:
            raise EmissionViolation(f"Value set module {module.module_id} must hold exactly one enumeration")
        generated = module.enums[0]
        if not generated.members:
            raise EmissionViolation(f"Enumeration {generated.enum_id} has no members")

        state.use("FhirEnum")
        state.use("ConceptInfo")
        state.use("Dict")
        lines = self._preamble(generated.doc or generated.enum_id, state)
        lines += [
            "",
            f"VALUE_SET_URL = {literal(generated.value_set)}",
            f"VALUE_SET_VERSION = {literal(generated.version)}",
            f"CLOSED = {generated.closed}",
            "",
            "",
            f"class {generated.enum_id}(FhirEnum):",
        ]
        lines += docstring(generated.doc or generated.enum_id, "    ")
        lines.append("")
        for member in generated.members:
            comment = "  # deprecated" if member.deprecated else ""
            lines.append(f"    {member.name} = {literal(member.code)}{comment}")
        lines += ["", "", "CONCEPTS: Dict[str, ConceptInfo] = {"]
        for member in generated.members:
            lines.append(
                f"    {literal(member.code)}: ConceptInfo({literal(member.code)}, display={literal(member.display)}, "
                f"definition={literal(member.definition)}, system={literal(member.system)}, "
                f"deprecated={member.deprecated}),"
            )
        lines.append("}")
        return lines

    def _render_concept_map(self, state: RenderState) -> List[str]:
        module = state.module
        for name in ("ConceptMapping", "translate", "Dict", "Optional", "Tuple"):
            state.use(name)
        table = module.concept_maps[0]
        lines = self._preamble(table.doc or table.name, state)
        lines += [
            "",
            f"SOURCE_URL = {literal(table.url)}",
            "",
            "TABLE: Dict[Tuple[Optional[str], str], Tuple[ConceptMapping, ...]] = {",
        ]
        for (system, code), targets in table.entries:
            lines.append(f"    ({literal(system)}, {literal(code)}): (")
            for target in targets:
                lines.append(
                    f"        ConceptMapping({literal(target.system)}, {literal(target.code)}, "
                    f"{literal(target.relationship)}, display={literal(target.display)}),"
                )
            lines.append("    ),")
        lines += [
            "}",
            "",
            "",
            "def lookup(code: str, system: Optional[str] = None) -> Tuple[ConceptMapping, ...]:",
            '    """Targets of a source code; without a system every source system is searched."""',
            "    return translate(TABLE, system, code)",
        ]
        return lines

    def _render_search_index(self, state: RenderState) -> List[str]:
        module = state.module
        for name in ("SearchParameterInfo", "Dict", "Tuple"):
            state.use(name)
        lines = self._preamble("Search parameters by base resource.", state)
        lines += ["", "SEARCH_PARAMETERS: Dict[str, Tuple[SearchParameterInfo, ...]] = {"]
        for base, entries in module.search_parameters.items():
            lines.append(f"    {literal(base)}: (")
            for entry in entries:
                lines.append(
                    f"        SearchParameterInfo({literal(entry.code)}, {literal(entry.type)}, "
                    f"expression={literal(entry.expression)}, url={literal(entry.url)}),"
                )
            lines.append("    ),")
        lines.append("}")
        return lines
