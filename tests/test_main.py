"""Tests for the pipeline wiring in fhirgen.main."""

import logging

import pytest

from fhirgen.adapters.storage.filesystem_writer import FilesystemWriter
from fhirgen.domain.services.orchestrator import CancellationToken
from fhirgen.infrastructure.config_manager import GeneratorConfig
from fhirgen.main import create_orchestrator, main, run_generation


@pytest.fixture(autouse=True)
def keep_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCreateOrchestrator:
    """Test adapter selection from configuration."""

    def test_adapters_follow_configuration(self):
        config = GeneratorConfig(strict=False, package_name="fhir_r5", max_workers=2,
                                 parallel_emit=True, name_suffix_budget=5)
        token = CancellationToken()
        orchestrator = create_orchestrator(config, token)

        assert orchestrator.loader.strict is False
        assert orchestrator.loader.max_workers == 2
        assert isinstance(orchestrator.writer, FilesystemWriter)
        assert orchestrator.writer.package_name == "fhir_r5"
        assert orchestrator.parallel_emit is True
        assert orchestrator.name_suffix_budget == 5
        assert orchestrator.cancellation is token


class TestRunGeneration:
    """Test run_generation."""

    def test_requires_directories(self):
        with pytest.raises(ValueError):
            run_generation(GeneratorConfig())

    def test_run_with_report(self, spec_dir, tmp_path):
        config = GeneratorConfig(input_dir=spec_dir, output_dir=tmp_path / "out",
                                 report_path=tmp_path / "reports" / "run.json", parallel_load=False)
        report = run_generation(config)

        assert report.success
        assert (tmp_path / "out" / "__init__.py").exists()
        assert (tmp_path / "reports" / "run.json").exists()


class TestMain:
    """Test the argparse entry point."""

    def test_success(self, spec_dir, tmp_path, capsys):
        code = main([str(spec_dir), str(tmp_path / "out"), "--package-name", "models"])
        assert code == 0
        assert (tmp_path / "out" / "models" / "patient.py").exists()
        assert "Status: SUCCESS" in capsys.readouterr().out

    def test_invalid_configuration(self, tmp_path):
        assert main([str(tmp_path / "absent"), str(tmp_path / "out")]) == 1

    def test_fatal_error_exits_with_one(self, tmp_path, capsys):
        spec = tmp_path / "spec"
        spec.mkdir()
        assert main([str(spec), str(tmp_path / "out")]) == 1

        captured = capsys.readouterr()
        assert "Status: FAILED" in captured.out
        assert "LoadError: Required bundle file is missing [profiles-types.json]" in captured.err
        assert "Required bundle file is missing" not in captured.out
