"""Adapters layer for fhirgen.

Adapters implement the Port interfaces defined in the domain layer: reading
specification bundles, rendering Python source and writing output files.
"""
