"""Domain layer for fhirgen.

This package contains the specification models, the generated-side
intermediate representation, the ports and the lowering services. It has no
dependencies beyond Pydantic.
"""
