"""Shared pytest fixtures.

Every test builds its own specification directory from ``spec_fixtures``;
nothing is downloaded.
"""

import importlib
import sys
import uuid
from pathlib import Path

import pytest

from fhirgen.adapters.emitters.pydantic_emitter import PydanticEmitter
from fhirgen.adapters.loaders.json_bundle_loader import JsonBundleLoader
from fhirgen.adapters.storage.filesystem_writer import FilesystemWriter
from fhirgen.domain.services.orchestrator import Orchestrator

from spec_fixtures import write_specification


def build_orchestrator(package_name=None, **kwargs) -> Orchestrator:
    """Orchestrator with the standard adapters and sequential loading."""
    return Orchestrator(
        loader=JsonBundleLoader(strict=True, parallel=False),
        emitter=PydanticEmitter(),
        writer=FilesystemWriter(package_name=package_name),
        **kwargs,
    )


@pytest.fixture
def orchestrator_factory():
    return build_orchestrator


@pytest.fixture
def spec_dir(tmp_path: Path) -> Path:
    """Directory holding the complete test specification."""
    return write_specification(tmp_path / "spec")


@pytest.fixture
def specification(spec_dir: Path):
    """The test specification, loaded."""
    result = JsonBundleLoader(parallel=False).load_directory(spec_dir)
    assert result.is_success(), result.error
    return result.value


@pytest.fixture
def lowered(specification):
    """(module_id -> sealed module, report) for the test specification."""
    orchestrator = build_orchestrator()
    modules = orchestrator.lower(specification)
    return {module.module_id: module for module in modules}, orchestrator.report


@pytest.fixture(scope="module")
def generated_package(tmp_path_factory):
    """Generate, write and import a package from the test specification.

    Each test module gets its own package name so the generated runtime's
    resource registry is never shared.
    """
    root = tmp_path_factory.mktemp("generated")
    spec = write_specification(root / "spec")
    output = root / "out"
    package_name = f"fhir_models_{uuid.uuid4().hex[:8]}"

    report = build_orchestrator(package_name=package_name).run(spec, output)
    assert report.success, [error.describe() for error in report.fatal_errors]

    sys.path.insert(0, str(output))
    try:
        package = importlib.import_module(package_name)
        yield package
    finally:
        sys.path.remove(str(output))
        for name in [m for m in sys.modules if m == package_name or m.startswith(f"{package_name}.")]:
            del sys.modules[name]
