"""fhirgen - FHIR specification to pydantic model generator.

Reads the specification's JSON bundles (StructureDefinitions, ValueSets,
CodeSystems, ConceptMaps, SearchParameters) and writes a Python package of
pydantic v2 models, enumerations and lookup tables.
"""

__version__ = "0.1.0"
