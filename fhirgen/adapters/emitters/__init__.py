"""Emitter adapters (EmitterPort implementations)."""

from fhirgen.adapters.emitters.pydantic_emitter import GENERATED_MARKER, PydanticEmitter

__all__ = ["GENERATED_MARKER", "PydanticEmitter"]
