"""Domain Services.

This package contains the lowering services (name mapping, type resolution,
element, structure and terminology lowering) and the orchestrator that
drives them.
"""

from fhirgen.domain.services.name_mapper import NameMapper
from fhirgen.domain.services.type_resolver import TypeResolver
from fhirgen.domain.services.element_lowerer import ElementLowerer
from fhirgen.domain.services.structure_lowerer import StructureLowerer
from fhirgen.domain.services.terminology_lowerer import TerminologyLowerer
from fhirgen.domain.services.orchestrator import CancellationToken, Orchestrator, PipelineReport

__all__ = [
    "NameMapper",
    "TypeResolver",
    "ElementLowerer",
    "StructureLowerer",
    "TerminologyLowerer",
    "CancellationToken",
    "Orchestrator",
    "PipelineReport",
]
