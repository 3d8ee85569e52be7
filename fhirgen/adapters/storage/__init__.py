"""Output adapters (OutputPort implementations)."""

from fhirgen.adapters.storage.filesystem_writer import FilesystemWriter

__all__ = ["FilesystemWriter"]
