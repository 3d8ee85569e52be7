"""Orchestrator - runs the generation pipeline end to end.

Phases:
    1. Load every bundle (C1)
    2. Declare primitives, complex types, resources and profiles so every
       type name resolves before any structure is lowered (C2, C3)
    3. Lower terminology into enumerations and lookup tables (C6)
    4. Lower complex types, then resources, then profiles (C4, C5)
    5. Emit sealed modules (C7) and write them to the output directory

Scheduling:
    - Within each phase structures are processed in alphabetical order of name
    - A structure waits until its base definition and the backbone types it
      uses are sealed
    - When a pass makes no progress, structures waiting on each other form a
      CycleError; everything else is lowered with opaque stand-ins

Error handling:
    - Components return Result values; the orchestrator aggregates their
      diagnostics into a PipelineReport
    - A CardinalityError skips one structure and fails the run, but every
      other module is still emitted
    - Load, cycle, name-collision and emission errors stop the run
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from fhirgen.domain.ir import GeneratedModule, GenerationIndex, ModuleKind, SearchParameterEntry
from fhirgen.domain.ports import (
    BundleSourcePort,
    CycleError,
    EmissionError,
    EmittedFile,
    EmitterPort,
    ErrorKind,
    NameCollisionError,
    OutputPort,
    PipelineError,
    Result,
    TypeResolutionError,
)
from fhirgen.domain.services.name_mapper import DEFAULT_SUFFIX_BUDGET, NameCollisionBudgetExceeded, NameMapper
from fhirgen.domain.services.structure_lowerer import LOWERED_KINDS, StructureLowerer, structure_name
from fhirgen.domain.services.terminology_lowerer import TerminologyLowerer
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.spec_models import SpecificationSet, StructureDefinition

logger = logging.getLogger(__name__)

SEARCH_INDEX_MODULE = "search_parameters"


class GenerationCancelled(Exception):
    """Raised between entries once the cancellation token is set."""


class CancellationToken:
    """Cooperative cancellation flag shared with the pipeline.

    Example:
        ```python
        token = CancellationToken()
        orchestrator = Orchestrator(loader, emitter, writer, cancellation=token)
        # from another thread
        token.cancel()
        ```
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("Generation cancelled")


@dataclass
class PipelineReport:
    """Outcome of one pipeline run.

    Attributes:
        success: False if any fatal error occurred or the run was cancelled
        diagnostics: Every PipelineError gathered, in the order reported
        counts: Items processed per phase
        files_written: Paths written by the output writer
        skipped: Structures that were not lowered, with the reason
        cancelled: Whether the run stopped on the cancellation token
    """

    success: bool = True
    diagnostics: List[PipelineError] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    files_written: List[Path] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def add(self, errors: Sequence[PipelineError]) -> None:
        for error in errors:
            self.diagnostics.append(error)
            if error.fatal:
                self.success = False

    def count(self, phase: str, amount: int = 1) -> None:
        self.counts[phase] = self.counts.get(phase, 0) + amount

    @property
    def fatal_errors(self) -> List[PipelineError]:
        return [e for e in self.diagnostics if e.fatal]

    @property
    def warnings(self) -> List[PipelineError]:
        return [e for e in self.diagnostics if not e.fatal]

    def errors_of(self, kind: ErrorKind) -> List[PipelineError]:
        return [e for e in self.diagnostics if e.kind == kind]

    def error_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.diagnostics:
            counts[error.kind.value] = counts.get(error.kind.value, 0) + 1
        return dict(sorted(counts.items()))

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "counts": dict(sorted(self.counts.items())),
            "error_counts": self.error_counts(),
            "errors": [e.to_dict() for e in self.diagnostics],
            "skipped": [{"structure": name, "reason": reason} for name, reason in self.skipped],
            "files_written": [str(p) for p in self.files_written],
        }


def _order_key(structure: StructureDefinition) -> Tuple[str, str]:
    return structure_name(structure), structure.url or ""


class Orchestrator:
    """Drives C1 through C7 for one input directory.

    Parameters:
        loader: Bundle loader adapter
        emitter: Target-language emitter adapter
        writer: Output writer adapter
        parallel_emit: Emit independent modules in a thread pool
        max_workers: Thread pool size for emission
        name_suffix_budget: Collision suffix budget per naming scope
        cancellation: Optional cancellation token
    """

    def __init__(
        self,
        loader: BundleSourcePort,
        emitter: EmitterPort,
        writer: OutputPort,
        parallel_emit: bool = False,
        max_workers: int = 4,
        name_suffix_budget: int = DEFAULT_SUFFIX_BUDGET,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.loader = loader
        self.emitter = emitter
        self.writer = writer
        self.parallel_emit = parallel_emit
        self.max_workers = max_workers
        self.name_suffix_budget = name_suffix_budget
        self.cancellation = cancellation or CancellationToken()
        self.report = PipelineReport()

    # ------------------------------------------------------------------
    # Full runs
    # ------------------------------------------------------------------

    def run(self, input_dir: Path, output_dir: Path) -> PipelineReport:
        """Load, lower, emit and write.

        Returns:
            PipelineReport: Always returned; check ``success`` for the outcome
        """
        self.report = PipelineReport()
        logger.info(f"Loading specification from {input_dir}")
        loaded = self.loader.load_directory(Path(input_dir))
        self.report.add(loaded.errors())
        if loaded.is_failure():
            logger.error(f"Loading failed: {loaded.error}")
            return self._finish()
        return self.run_specification(loaded.value, output_dir, reset=False)

    def run_specification(self, specification: SpecificationSet, output_dir: Path,
                          reset: bool = True) -> PipelineReport:
        """Lower, emit and write an already loaded specification."""
        if reset:
            self.report = PipelineReport()
        try:
            modules = self.lower(specification)
            if self._has_fatal(ErrorKind.CYCLE, ErrorKind.NAME_COLLISION):
                logger.error("Lowering stopped on fatal errors; nothing written")
                return self._finish()

            emitted = self.emit(modules, specification.fhir_version)
            if emitted.is_failure():
                logger.error(f"Emission failed: {emitted.error}")
                return self._finish()

            self.cancellation.raise_if_cancelled()
            written = self.writer.write(emitted.value, Path(output_dir))
            self.report.add(written.errors())
            if written.is_success():
                self.report.files_written = list(written.value)
                self.report.count("files", len(written.value))
            else:
                logger.error(f"Writing failed: {written.error}")
        except GenerationCancelled:
            logger.warning("Generation cancelled; partial output discarded")
            self.report.cancelled = True
            self.report.success = False
        return self._finish()

    def _finish(self) -> PipelineReport:
        self.report.finished_at = datetime.now()
        fatal = len(self.report.fatal_errors)
        if self.report.success:
            logger.info(f"Generation finished: {self.report.counts.get('files', 0)} files, "
                        f"{len(self.report.warnings)} warnings")
        else:
            logger.error(f"Generation failed with {fatal} fatal errors")
        return self.report

    def _has_fatal(self, *kinds: ErrorKind) -> bool:
        return any(e.fatal and e.kind in kinds for e in self.report.diagnostics)

    # ------------------------------------------------------------------
    # Lowering
    # ------------------------------------------------------------------

    def lower(self, specification: SpecificationSet) -> List[GeneratedModule]:
        """Lower a loaded specification into sealed modules.

        A fresh name mapper and type registry are created for every call.

        Returns:
            Sealed modules sorted by module_id; diagnostics go to the report
        """
        names = NameMapper(self.name_suffix_budget)
        resolver = TypeResolver()
        structures = StructureLowerer(names, resolver)
        terminology = TerminologyLowerer(names, resolver, specification)

        primitives, complex_types, resources, profiles = self._partition(specification.structure_definitions)

        try:
            self._declare(structures, specification, primitives, complex_types + resources + profiles)
        except NameCollisionBudgetExceeded as exc:
            self.report.add([NameCollisionError(message=str(exc))])
            return []

        try:
            lowered = terminology.lower(
                specification.code_systems, specification.value_sets, specification.concept_maps,
            )
        except NameCollisionBudgetExceeded as exc:
            self.report.add([NameCollisionError(message=str(exc))])
            return []
        self.report.add(lowered.errors())
        modules: List[GeneratedModule] = list(lowered.value or [])
        self.report.count("value_sets", sum(1 for m in modules if m.kind == ModuleKind.VALUE_SET))
        self.report.count("concept_maps", sum(1 for m in modules if m.kind == ModuleKind.CONCEPT_MAP))

        settled: Set[str] = set()
        for phase, batch in (("complex_types", complex_types), ("resources", resources), ("profiles", profiles)):
            logger.info(f"Lowering {len(batch)} {phase.replace('_', ' ')}", extra={"phase": phase})
            phase_modules = self._lower_phase(structures, resolver, specification, batch, settled)
            self.report.count(phase, len(phase_modules))
            modules.extend(phase_modules)
            if self._has_fatal(ErrorKind.CYCLE, ErrorKind.NAME_COLLISION):
                break

        search_index = self._lower_search_parameters(specification)
        if search_index is not None:
            modules.append(search_index)

        modules.sort(key=lambda m: m.module_id)
        self.report.count("modules", len(modules))
        return modules

    def _partition(self, definitions: Sequence[StructureDefinition]):
        primitives, complex_types, resources, profiles = [], [], [], []
        for definition in sorted(definitions, key=_order_key):
            if definition.kind == "primitive-type":
                if not definition.is_profile:
                    primitives.append(definition)
            elif definition.kind not in LOWERED_KINDS:
                self.report.skipped.append((structure_name(definition), f"kind '{definition.kind}' is not lowered"))
            elif definition.is_profile:
                profiles.append(definition)
            elif definition.kind == "resource":
                resources.append(definition)
            else:
                complex_types.append(definition)
        return primitives, complex_types, resources, profiles

    def _declare(self, structures: StructureLowerer, specification: SpecificationSet,
                 primitives: List[StructureDefinition], lowered: List[StructureDefinition]) -> None:
        for definition in primitives:
            warning = structures.declare_primitive(definition)
            if warning is not None:
                self.report.add([warning])
        for definition in lowered:
            structures.declare(definition)
        self.report.count("primitives", len(primitives))
        logger.info(f"Declared {len(primitives)} primitives and {len(lowered)} structures")

    def _lower_phase(self, structures: StructureLowerer, resolver: TypeResolver,
                     specification: SpecificationSet, batch: List[StructureDefinition],
                     settled: Set[str]) -> List[GeneratedModule]:
        """Lower one phase with deferral, cycle detection and a final opaque pass."""
        modules: List[GeneratedModule] = []
        queue = list(batch)
        finalize = False

        while queue:
            progressed = False
            waiting: List[Tuple[StructureDefinition, Set[str]]] = []

            for definition in queue:
                self.cancellation.raise_if_cancelled()
                key = structures.seal_key(definition)
                unmet = {d for d in structures.dependencies(definition)
                         if not resolver.is_sealed(d) and d not in settled}
                if unmet and not finalize:
                    waiting.append((definition, unmet))
                    continue

                source_file = specification.source_of(definition.url)[0]
                unavailable = self._unavailable(structures, resolver, definition, source_file)
                result = structures.lower(definition, finalize_pending=finalize, source_file=source_file)
                if result.is_failure():
                    self.report.add(unavailable + result.errors())
                    self.report.skipped.append((structure_name(definition), result.error_type or "failed"))
                    settled.add(key)
                    progressed = True
                    continue

                module = result.value
                pending = module.pending_codes()
                if pending and not finalize:
                    waiting.append((definition, set(pending)))
                    continue

                structures.register_paths(module, definition)
                resolver.seal(key)
                settled.add(key)
                modules.append(module.seal())
                self.report.add(unavailable + result.errors())
                progressed = True

            if not waiting:
                break
            queue = [definition for definition, _ in waiting]
            if progressed:
                continue

            cyclic = self._find_cycle(structures, waiting)
            if cyclic:
                participants = tuple(sorted(cyclic))
                self.report.add([CycleError(
                    message=f"Specialization cycle between {', '.join(participants)}",
                    participants=participants,
                )])
                settled.update(cyclic)
                queue = [d for d in queue if structures.seal_key(d) not in cyclic]
                continue

            logger.debug(f"No progress with {len(queue)} waiting structures; lowering with opaque stand-ins")
            finalize = True

        return modules

    def _find_cycle(self, structures: StructureLowerer,
                    waiting: List[Tuple[StructureDefinition, Set[str]]]) -> Set[str]:
        """Return the keys of waiting structures that (transitively) wait on themselves."""
        edges = {structures.seal_key(d): deps for d, deps in waiting}
        cyclic: Set[str] = set()
        for start in edges:
            seen: Set[str] = set()
            stack = list(edges[start])
            while stack:
                current = stack.pop()
                if current == start:
                    cyclic.add(start)
                    break
                if current in seen or current not in edges:
                    continue
                seen.add(current)
                stack.extend(edges[current])
        return cyclic

    def _unavailable(self, structures: StructureLowerer, resolver: TypeResolver,
                     definition: StructureDefinition, source_file: Optional[str]) -> List[PipelineError]:
        return [
            TypeResolutionError(
                message=f"{dependency} is not available; {structure_name(definition)} is generated without it",
                file=source_file,
                full_url=definition.url,
            )
            for dependency in sorted(structures.dependencies(definition))
            if not resolver.is_sealed(dependency)
        ]

    def _lower_search_parameters(self, specification: SpecificationSet) -> Optional[GeneratedModule]:
        parameters = specification.search_parameters
        if not parameters:
            return None
        index: Dict[str, List[SearchParameterEntry]] = {}
        for parameter in parameters:
            if not parameter.code:
                continue
            entry = SearchParameterEntry(
                code=parameter.code,
                type=parameter.type or "string",
                expression=parameter.expression,
                url=parameter.url,
            )
            for base in parameter.base:
                index.setdefault(base, []).append(entry)
        for base in index:
            index[base].sort(key=lambda e: (e.code, e.url or ""))
        self.report.count("search_parameters", len(parameters))
        return GeneratedModule(
            module_id=SEARCH_INDEX_MODULE,
            kind=ModuleKind.SEARCH_INDEX,
            fhir_name="SearchParameter",
            search_parameters=index,
        ).seal()

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, modules: List[GeneratedModule], fhir_version: Optional[str] = None) -> Result[List[EmittedFile]]:
        """Render sealed modules plus the support files, ordered by path."""
        index = GenerationIndex.build(modules, fhir_version)

        def render(module: GeneratedModule) -> Result[EmittedFile]:
            self.cancellation.raise_if_cancelled()
            return self.emitter.emit_module(module, index)

        if self.parallel_emit and len(modules) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fhirgen-emit") as executor:
                results = list(executor.map(render, modules))
        else:
            results = [render(module) for module in modules]

        files: List[EmittedFile] = []
        for result in results:
            self.report.add(result.errors())
            if result.is_success():
                files.append(result.value)

        support = self.emitter.emit_support_files(modules, index)
        self.report.add(support.errors())
        if support.is_success():
            files.extend(support.value)

        failures = [e for e in self.report.diagnostics if e.kind == ErrorKind.EMISSION]
        if failures:
            return Result.failure_result(
                EmissionError(message=f"{len(failures)} modules could not be emitted"),
                diagnostics=(),
            )
        files.sort(key=lambda f: f.path)
        self.report.count("emitted", len(files))
        return Result.success_result(files)
