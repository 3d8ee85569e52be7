"""Main entry point for the fhirgen generation pipeline.

This module wires the adapters to the orchestrator and provides a plain
argparse entry point next to the typer CLI in ``fhirgen.cli``.

Architecture:
    - Follows Hexagonal Architecture principles
    - The JSON bundle loader, pydantic emitter and filesystem writer are
      selected here and injected into the orchestrator
    - Configuration is loaded via the configuration manager
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from fhirgen.adapters.emitters.pydantic_emitter import PydanticEmitter
from fhirgen.adapters.loaders.json_bundle_loader import JsonBundleLoader
from fhirgen.adapters.storage.filesystem_writer import FilesystemWriter
from fhirgen.domain.services.orchestrator import CancellationToken, Orchestrator, PipelineReport
from fhirgen.infrastructure.config_manager import GeneratorConfig
from fhirgen.infrastructure.generation_report import generate_generation_report, print_generation_report_summary
from fhirgen.infrastructure.logging_config import setup_logging
from fhirgen.infrastructure.settings import settings

logger = logging.getLogger(__name__)


def create_orchestrator(config: GeneratorConfig, cancellation: Optional[CancellationToken] = None) -> Orchestrator:
    """Create an orchestrator with adapters configured from ``config``."""
    loader = JsonBundleLoader(strict=config.strict, parallel=config.parallel_load, max_workers=config.max_workers)
    emitter = PydanticEmitter(specification_base_url=config.specification_base_url)
    writer = FilesystemWriter(package_name=config.package_name)
    logger.debug(f"Loader strict={config.strict}, package={config.package_name or '<output dir>'}")
    return Orchestrator(
        loader=loader,
        emitter=emitter,
        writer=writer,
        parallel_emit=config.parallel_emit,
        max_workers=config.max_workers,
        name_suffix_budget=config.name_suffix_budget,
        cancellation=cancellation,
    )


def run_generation(config: GeneratorConfig, cancellation: Optional[CancellationToken] = None) -> PipelineReport:
    """Run the whole pipeline for a validated configuration.

    Raises:
        ValueError: If the configuration lacks input or output directories
    """
    if config.input_dir is None or config.output_dir is None:
        raise ValueError("Both input_dir and output_dir are required")

    orchestrator = create_orchestrator(config, cancellation)
    report = orchestrator.run(config.input_dir, config.output_dir)

    if config.report_path:
        saved = generate_generation_report(report, str(config.report_path))
        if saved.is_success():
            logger.info(f"Generation report saved: {saved.value['saved_to']}")
        else:
            logger.warning(f"Failed to save generation report: {saved.error}")
    return report


def main(argv: Optional[List[str]] = None) -> int:
    """Argparse entry point. Returns the process exit code."""
    parser = argparse.ArgumentParser(
        description=f"{settings.app_name} - FHIR specification to pydantic model generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate models from an unpacked specification
  python -m fhirgen.main fhir-definitions out/

  # Write into a named package and accept unknown JSON keys
  python -m fhirgen.main fhir-definitions out/ --package-name fhir_r5 --permissive
        """
    )
    parser.add_argument("input_dir", type=str, help="Directory with the specification bundles")
    parser.add_argument("output_dir", type=str, help="Output directory")
    parser.add_argument("--permissive", action="store_true", help="Log unknown JSON keys instead of failing")
    parser.add_argument("--package-name", type=str, default=None, help="Generated package name")
    parser.add_argument("--workers", type=int, default=None,
                        help=f"Thread pool size (default: {settings.max_workers})")
    parser.add_argument("--report", type=str, default=None, help="Write the JSON generation report here")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    setup_logging(use_json=settings.json_logs, log_level="DEBUG" if args.verbose else settings.log_level)

    try:
        config = settings.config_manager.get_generator_config(
            input_dir=Path(args.input_dir),
            output_dir=Path(args.output_dir),
            strict=False if args.permissive else None,
            package_name=args.package_name,
            max_workers=args.workers or settings.max_workers,
            report_path=Path(args.report) if args.report else None,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {str(e)}")
        return 1

    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Input directory: {config.input_dir}")
    logger.info(f"Output directory: {config.output_dir}")

    try:
        report = run_generation(config)
    except KeyboardInterrupt:
        logger.warning("Generation interrupted by user")
        return 130

    generated = generate_generation_report(report)
    print_generation_report_summary(generated.value)
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
