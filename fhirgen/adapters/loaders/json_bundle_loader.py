"""JSON Bundle Loader Adapter.

This adapter implements the BundleSourcePort contract for the FHIR
specification's JSON bundles (profiles-types.json, valuesets.json, ...).
It is a typed front end over the JSON: resources are parsed into the
specification models, nothing is interpreted.

Error handling:
    - Malformed JSON, a missing required file, a duplicate fullUrl or an
      unexpected resourceType is a LoadError
    - Unmodelled keys are UnknownFieldErrors: fatal in strict mode, logged
      warnings in permissive mode

Architecture:
    - Implements BundleSourcePort (Hexagonal Architecture)
    - Files may be parsed in parallel; results are always ordered by
      BundleKind declaration order
"""

import configparser
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from fhirgen.domain.ports import (
    BundleKind,
    BundleSourcePort,
    LoadError,
    PipelineError,
    Result,
    UnknownFieldError,
)
from fhirgen.domain.spec_models import (
    OPAQUE_RESOURCE_TYPES,
    RESOURCE_MODELS,
    BundleEntryRecord,
    LoadedBundle,
    OpaqueResource,
    SpecificationSet,
    VersionInfo,
)

logger = logging.getLogger(__name__)

VERSION_INFO_FILE = "version.info"


def parse_version_info(text: str) -> VersionInfo:
    """Parse version.info in either the INI or the JSON layout.

    INI (shipped with the specification)::

        [FHIR]
        FhirVersion=5.0.0
        version=5.0.0
        buildId=...

    JSON (package metadata): ``fhirVersion`` or ``fhirVersions[0]``,
    ``version``, ``buildId``, ``date``.

    Raises:
        ValueError: If the text is neither valid INI nor a JSON object
    """
    stripped = text.lstrip()
    data: Any = None
    if stripped.startswith("{"):
        data = json.loads(stripped)
    elif stripped.startswith("["):
        # "[FHIR]" is an INI section header; only valid JSON is an array
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None

    if data is not None:
        if not isinstance(data, dict):
            raise ValueError(f"version.info must be a JSON object, not {type(data).__name__}")
        fhir_version = data.get("fhirVersion")
        if fhir_version is None and data.get("fhirVersions"):
            fhir_version = data["fhirVersions"][0]
        return VersionInfo(
            fhir_version=fhir_version,
            version=data.get("version"),
            build_id=data.get("buildId"),
            date=data.get("date"),
        )

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as exc:
        raise ValueError(f"Invalid version.info: {exc}") from exc
    section = parser["FHIR"] if parser.has_section("FHIR") else parser[parser.sections()[0]] if parser.sections() else {}
    return VersionInfo(
        fhir_version=section.get("fhirversion"),
        version=section.get("version"),
        build_id=section.get("buildid"),
        date=section.get("date"),
    )


class JsonBundleLoader(BundleSourcePort):
    """Loads FHIR specification bundles from JSON.

    Parameters:
        strict: Report unmodelled keys as fatal UnknownFieldErrors
        parallel: Parse several files concurrently
        max_workers: Thread pool size for parallel loading

    Example:
        ```python
        loader = JsonBundleLoader(strict=False)
        result = loader.load_directory(Path("fhir-spec"))
        if result.is_success():
            print(result.value.inventory())
        ```
    """

    def __init__(self, strict: bool = True, parallel: bool = True, max_workers: int = 4):
        self.strict = strict
        self.parallel = parallel
        self.max_workers = max_workers
        self.adapter_name = "json_bundle_loader"

    def can_load(self, source: str) -> bool:
        """Check if the source is a specification directory or bundle file."""
        if not source:
            return False
        source_path = Path(source)
        if source_path.is_dir():
            return (source_path / BundleKind.PROFILES_TYPES.value).exists()
        return BundleKind.from_filename(source_path.name) is not None

    def get_source_info(self, source: str) -> Optional[dict]:
        source_path = Path(source)
        if not source_path.exists():
            return None
        if source_path.is_dir():
            return {
                "path": str(source_path),
                "files": sorted(k.value for k in BundleKind if (source_path / k.value).exists()),
                "has_version_info": (source_path / VERSION_INFO_FILE).exists(),
            }
        kind = BundleKind.from_filename(source_path.name)
        return {
            "path": str(source_path),
            "size_bytes": source_path.stat().st_size,
            "kind": kind.value if kind else None,
        }

    # ------------------------------------------------------------------
    # Single bundles
    # ------------------------------------------------------------------

    def load(self, data: bytes, kind: BundleKind, source_name: str) -> Result[LoadedBundle]:
        """Parse one bundle.

        Parameters:
            data: Raw bytes of the bundle file
            kind: Declared bundle kind
            source_name: File name used in error locations

        Returns:
            Result[LoadedBundle]: Parsed bundle with UnknownFieldError
            diagnostics, or a failure carrying every fatal error found
        """
        try:
            document = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return Result.failure_result(LoadError(message=f"Malformed JSON: {exc}", file=source_name))

        if not isinstance(document, dict) or document.get("resourceType") != "Bundle":
            return Result.failure_result(LoadError(message="Top-level resource is not a Bundle", file=source_name))

        bundle = LoadedBundle(kind=kind, source_name=source_name)
        errors: List[PipelineError] = []
        seen_urls: Dict[str, int] = {}

        for index, entry in enumerate(document.get("entry") or []):
            full_url = entry.get("fullUrl") if isinstance(entry, dict) else None
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if not isinstance(resource, dict):
                errors.append(LoadError(message="Bundle entry has no resource", file=source_name,
                                        full_url=full_url, entry_index=index))
                continue

            if full_url is not None:
                if full_url in seen_urls:
                    errors.append(LoadError(
                        message=f"Duplicate fullUrl (first seen at entry {seen_urls[full_url]})",
                        file=source_name, full_url=full_url, entry_index=index,
                    ))
                    continue
                seen_urls[full_url] = index

            parsed, entry_errors = self._parse_resource(resource, source_name, full_url, index)
            errors.extend(entry_errors)
            if parsed is not None:
                bundle.entries.append(BundleEntryRecord(index=index, full_url=full_url, resource=parsed))

        fatal = [e for e in errors if e.fatal]
        for error in errors:
            if not error.fatal:
                logger.warning(error.describe())
        if fatal:
            logger.error(f"{source_name}: {len(fatal)} fatal errors")
            return Result.failure_result(fatal[0], diagnostics=errors)

        logger.info(f"Loaded {len(bundle.entries)} entries from {source_name}")
        return Result.success_result(bundle, diagnostics=errors)

    def _parse_resource(self, resource: Dict[str, Any], source_name: str, full_url: Optional[str],
                        index: int) -> Tuple[Optional[Any], List[PipelineError]]:
        resource_type = resource.get("resourceType")
        model = RESOURCE_MODELS.get(resource_type)
        if model is None and resource_type in OPAQUE_RESOURCE_TYPES:
            model = OpaqueResource
        if model is None:
            return None, [LoadError(message=f"Unexpected resourceType {resource_type!r}", file=source_name,
                                    full_url=full_url, entry_index=index)]

        try:
            parsed = model.model_validate(resource)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            return None, [LoadError(
                message=f"Invalid {resource_type}: {first.get('msg')} at {location or '<root>'}",
                file=source_name, full_url=full_url, entry_index=index,
            )]

        errors: List[PipelineError] = [
            UnknownFieldError(
                message=f"Unknown field '{key}' on {location}",
                file=source_name,
                full_url=full_url,
                element_path=location,
                fatal=self.strict,
                entry_index=index,
            )
            for location, key in parsed.unknown_fields(resource_type)
        ]
        return parsed, errors

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def load_directory(self, input_dir: Path) -> Result[SpecificationSet]:
        """Load every known bundle below a directory, plus version.info.

        Missing optional bundles are skipped; a missing required bundle is a
        fatal LoadError. Other files are ignored.
        """
        input_dir = Path(input_dir)
        if not input_dir.is_dir():
            return Result.failure_result(LoadError(message="Input directory does not exist", file=str(input_dir)))

        errors: List[PipelineError] = []
        present: List[BundleKind] = []
        for kind in BundleKind:
            if (input_dir / kind.value).is_file():
                present.append(kind)
            elif kind.required:
                errors.append(LoadError(message="Required bundle file is missing", file=kind.value))
            else:
                logger.info(f"Optional bundle {kind.value} not found; skipped")
        if errors:
            return Result.failure_result(errors[0], diagnostics=errors)

        def read(kind: BundleKind) -> Result[LoadedBundle]:
            path = input_dir / kind.value
            try:
                data = path.read_bytes()
            except OSError as exc:
                return Result.failure_result(LoadError(message=f"Cannot read file: {exc}", file=kind.value))
            return self.load(data, kind, kind.value)

        if self.parallel and len(present) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fhirgen-load") as executor:
                results = list(executor.map(read, present))
        else:
            results = [read(kind) for kind in present]

        specification = SpecificationSet()
        for result in results:
            errors.extend(result.errors())
            if result.is_success():
                specification.add(result.value)

        version_path = input_dir / VERSION_INFO_FILE
        if version_path.is_file():
            try:
                specification.version_info = parse_version_info(version_path.read_text(encoding="utf-8"))
                logger.info(f"FHIR version {specification.version_info.fhir_version or 'unknown'} (version.info)")
            except (OSError, ValueError) as exc:
                errors.append(LoadError(message=f"Unreadable version.info: {exc}", file=VERSION_INFO_FILE, fatal=False))

        fatal = [e for e in errors if e.fatal]
        if fatal:
            return Result.failure_result(fatal[0], diagnostics=errors)
        return Result.success_result(specification, diagnostics=errors)
