"""Domain Ports - Result Type, Error Taxonomy and Abstract Contracts.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement, together with the value types used to report success and failure.
Following Hexagonal Architecture, the Domain Core defines what it needs, not
how it's provided.

Error Model:
    - Errors are values: loaders and lowerers return PipelineError instances
      (wrapped in Result) instead of raising
    - The orchestrator decides which errors are fatal for the run
    - Only internal bugs propagate as exceptions (GenerationAborted)

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (JSON bundle loader, pydantic emitter, filesystem writer)
      implement these ports
    - Domain Core is isolated from file formats and target-language details
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Error Taxonomy
# ============================================================================

class ErrorKind(str, Enum):
    """Enumeration of pipeline error kinds."""
    LOAD = "LoadError"
    UNKNOWN_FIELD = "UnknownFieldError"
    TYPE_RESOLUTION = "TypeResolutionError"
    BINDING_RESOLUTION = "BindingResolutionError"
    CARDINALITY = "CardinalityError"
    CYCLE = "CycleError"
    NAME_COLLISION = "NameCollisionError"
    EMISSION = "EmissionError"
    MISSING_SNAPSHOT = "MissingSnapshotError"
    SNAPSHOT_ORDER = "SnapshotOrderError"


@dataclass(frozen=True)
class PipelineError:
    """A structured pipeline error.

    Errors are plain values. Each subclass fixes its kind and its default
    fatality; the orchestrator may still decide how to react.

    Attributes:
        message: Human-readable description
        file: Specification file the error originates from (if known)
        full_url: Bundle entry fullUrl or canonical URL (if known)
        element_path: ElementDefinition path (if applicable)
        fatal: Whether the error aborts the run (or the affected structure)
        entry_index: Index of the bundle entry (loader errors only)
    """

    kind: ClassVar[ErrorKind]

    message: str
    file: Optional[str] = None
    full_url: Optional[str] = None
    element_path: Optional[str] = None
    fatal: bool = False
    entry_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for reports."""
        return {
            "kind": self.kind.value,
            "fatal": self.fatal,
            "message": self.message,
            "file": self.file,
            "full_url": self.full_url,
            "element_path": self.element_path,
            "entry_index": self.entry_index,
        }

    def describe(self) -> str:
        """One-line description including every known location."""
        location = [
            part for part in (
                self.file,
                f"entry {self.entry_index}" if self.entry_index is not None else None,
                self.full_url,
                self.element_path,
            ) if part
        ]
        where = f" [{' | '.join(location)}]" if location else ""
        return f"{self.kind.value}: {self.message}{where}"


@dataclass(frozen=True)
class LoadError(PipelineError):
    """Malformed JSON, missing required file, unexpected resourceType."""
    kind: ClassVar[ErrorKind] = ErrorKind.LOAD
    fatal: bool = True


@dataclass(frozen=True)
class UnknownFieldError(PipelineError):
    """JSON key not modelled on a known FHIR structure."""
    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN_FIELD
    fatal: bool = True


@dataclass(frozen=True)
class TypeResolutionError(PipelineError):
    """Reference to a FHIR type not present in the input."""
    kind: ClassVar[ErrorKind] = ErrorKind.TYPE_RESOLUTION


@dataclass(frozen=True)
class BindingResolutionError(PipelineError):
    """Required binding that could not be resolved to a closed enumeration."""
    kind: ClassVar[ErrorKind] = ErrorKind.BINDING_RESOLUTION


@dataclass(frozen=True)
class CardinalityError(PipelineError):
    """min > max, negative min, or non-numeric max. Skips the structure."""
    kind: ClassVar[ErrorKind] = ErrorKind.CARDINALITY
    fatal: bool = True


@dataclass(frozen=True)
class CycleError(PipelineError):
    """Structural cycle between types not mediated by contentReference."""
    kind: ClassVar[ErrorKind] = ErrorKind.CYCLE
    fatal: bool = True
    participants: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["participants"] = list(self.participants)
        return data


@dataclass(frozen=True)
class NameCollisionError(PipelineError):
    """A naming scope exhausted the deterministic suffixing budget."""
    kind: ClassVar[ErrorKind] = ErrorKind.NAME_COLLISION
    fatal: bool = True


@dataclass(frozen=True)
class EmissionError(PipelineError):
    """The emitter received IR violating its invariants (internal bug)."""
    kind: ClassVar[ErrorKind] = ErrorKind.EMISSION
    fatal: bool = True


@dataclass(frozen=True)
class MissingSnapshotError(PipelineError):
    """A StructureDefinition without a snapshot was skipped."""
    kind: ClassVar[ErrorKind] = ErrorKind.MISSING_SNAPSHOT


@dataclass(frozen=True)
class SnapshotOrderError(PipelineError):
    """Snapshot elements are not in depth-first pre-order."""
    kind: ClassVar[ErrorKind] = ErrorKind.SNAPSHOT_ORDER


class GenerationAborted(Exception):
    """Raised only for internal bugs that cannot be reported as values.

    Attributes:
        errors: The fatal errors that caused the abort
    """

    def __init__(self, message: str, errors: Sequence[PipelineError] = ()):
        super().__init__(message)
        self.errors = list(errors)


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Type of error (LoadError, EmissionError, etc.)
        error_details: Additional error context (file, full_url, ...)
        diagnostics: Non-fatal (or fatal) PipelineError values gathered
                     while producing the result

    Example:
        ```python
        result = loader.load(data, BundleKind.PROFILES_TYPES, "profiles-types.json")
        if result.is_success():
            bundle = result.value
        else:
            report(result.errors())
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None
    diagnostics: Tuple[PipelineError, ...] = ()

    @classmethod
    def success_result(cls, value: T, diagnostics: Sequence[PipelineError] = ()) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value
            diagnostics: Warnings collected while producing the value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None,
            diagnostics=tuple(diagnostics),
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception, PipelineError],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None,
        diagnostics: Sequence[PipelineError] = (),
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message, exception or PipelineError value
            error_type: Type of error (derived from the error when omitted)
            error_details: Additional context (file, full_url, ...)
            diagnostics: Every PipelineError gathered before failing

        Returns:
            Result: Failure result with error information
        """
        collected = list(diagnostics)
        if isinstance(error, PipelineError):
            error_message = error.message
            error_type_name = error_type or error.kind.value
            details = {**error.to_dict(), **(error_details or {})}
            if error not in collected:
                collected.insert(0, error)
        else:
            error_message = str(error) if isinstance(error, Exception) else error
            error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
            details = error_details or {}

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=details,
            diagnostics=tuple(collected),
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    def errors(self) -> List[PipelineError]:
        """Return every PipelineError attached to this result."""
        return list(self.diagnostics)


# ============================================================================
# Ports
# ============================================================================

class BundleKind(str, Enum):
    """Specification bundle files by conventional filename."""
    PROFILES_TYPES = "profiles-types.json"
    PROFILES_RESOURCES = "profiles-resources.json"
    PROFILES_OTHERS = "profiles-others.json"
    VALUESETS = "valuesets.json"
    CONCEPTMAPS = "conceptmaps.json"
    SEARCH_PARAMETERS = "search-parameters.json"
    DATAELEMENTS = "dataelements.json"

    @property
    def required(self) -> bool:
        return self in (BundleKind.PROFILES_TYPES, BundleKind.PROFILES_RESOURCES, BundleKind.VALUESETS)

    @classmethod
    def from_filename(cls, filename: str) -> Optional['BundleKind']:
        for kind in cls:
            if kind.value == filename:
                return kind
        return None


class BundleSourcePort(ABC):
    """Abstract contract for specification bundle loaders.

    A loader is a typed front end over the JSON: it performs no semantic
    interpretation of StructureDefinitions or terminology.
    """

    @abstractmethod
    def load(self, data: bytes, kind: BundleKind, source_name: str) -> Result[Any]:
        """Parse one bundle from raw bytes.

        Parameters:
            data: Raw bytes of the bundle file
            kind: Declared bundle kind
            source_name: File name used in error locations

        Returns:
            Result[LoadedBundle]: The parsed bundle, or a failure carrying a
            LoadError. UnknownFieldError diagnostics are attached either way.
        """
        pass

    @abstractmethod
    def load_directory(self, input_dir: Path) -> Result[Any]:
        """Load every known bundle and version.info below a directory.

        Returns:
            Result[SpecificationSet]: The loaded specification, or a failure
            carrying the fatal LoadError / UnknownFieldError values
        """
        pass

    @abstractmethod
    def can_load(self, source: str) -> bool:
        """Check if this loader can handle the given source."""
        pass

    def get_source_info(self, source: str) -> Optional[dict]:
        """Get metadata about the source (optional, adapter-specific)."""
        return None


@dataclass(frozen=True)
class EmittedFile:
    """One rendered output file.

    Attributes:
        path: POSIX path relative to the output package directory
        content: Full text of the file
    """
    path: str
    content: str


class EmitterPort(ABC):
    """Abstract contract for target-language emitters.

    Emission is a pure function of sealed IR: the same module and index
    always produce the same text.
    """

    @abstractmethod
    def emit_module(self, module: Any, index: Any) -> Result[Any]:
        """Render one sealed GeneratedModule as source text."""
        pass

    @abstractmethod
    def emit_support_files(self, modules: Sequence[Any], index: Any) -> Result[List[Any]]:
        """Render files that span modules (index file, runtime support)."""
        pass


class OutputPort(ABC):
    """Abstract contract for emitted-file sinks."""

    @abstractmethod
    def write(self, files: Sequence[Any], output_dir: Path) -> Result[List[Path]]:
        """Persist emitted files below output_dir.

        Returns:
            Result[List[Path]]: Paths written, in sorted order
        """
        pass
