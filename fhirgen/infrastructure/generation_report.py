"""Generation Report.

Turns a PipelineReport into a JSON-serialisable dictionary for CI systems
and prints a human-readable summary. Every error entry lists its kind,
fatal flag, file, bundle entry fullUrl and element path.
"""

import json
import sys
from pathlib import Path
from typing import Optional

from fhirgen import __version__
from fhirgen.domain.ports import Result
from fhirgen.domain.services.orchestrator import PipelineReport


def generate_generation_report(
    report: PipelineReport,
    output_path: Optional[str] = None,
) -> Result[dict]:
    """Build the generation report.

    Parameters:
        report: Report returned by the orchestrator
        output_path: Optional path to save the report as a JSON file

    Returns:
        Result[dict]: Report dictionary (with ``saved_to`` when written) or error
    """
    data = {"generator": "fhirgen", "generator_version": __version__, **report.to_dict()}

    if output_path:
        try:
            output_file = Path(output_path)
            output_file.parent.mkdir(parents=True, exist_ok=True)

            with open(output_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, default=str)

            return Result.success_result({
                **data,
                "saved_to": str(output_file)
            })
        except OSError as e:
            return Result.failure_result(
                ValueError(f"Failed to save report to {output_path}: {str(e)}"),
                error_type="ValueError"
            )

    return Result.success_result(data)


def print_generation_report_summary(report: dict) -> None:
    """Print a human-readable summary of the generation report.

    Fatal errors go to stderr; the rest of the summary goes to stdout.

    Parameters:
        report: Report dictionary from generate_generation_report
    """
    print("=" * 70)
    print("GENERATION REPORT")
    print("=" * 70)

    print(f"\nStatus: {'SUCCESS' if report.get('success') else 'FAILED'}")
    if report.get('cancelled'):
        print("Run was cancelled")
    if report.get('duration_seconds') is not None:
        print(f"Duration: {report['duration_seconds']:.2f}s")

    counts = report.get('counts', {})
    if counts:
        print("\nProcessed:")
        for phase, count in sorted(counts.items()):
            print(f"  {phase}: {count}")

    error_counts = report.get('error_counts', {})
    if error_counts:
        print("\nErrors by Kind:")
        for kind, count in sorted(error_counts.items()):
            print(f"  {kind}: {count}")

    fatal = [e for e in report.get('errors', []) if e.get('fatal')]
    if fatal:
        print(f"\n{len(fatal)} fatal error(s), listed on stderr")
        print("Fatal Errors:", file=sys.stderr)
        for error in fatal:
            location = " | ".join(
                str(part) for part in (error.get('file'), error.get('full_url'), error.get('element_path')) if part
            )
            print(f"  {error['kind']}: {error['message']}" + (f" [{location}]" if location else ""), file=sys.stderr)

    skipped = report.get('skipped', [])
    if skipped:
        print("\nSkipped Structures:")
        for entry in skipped:
            print(f"  {entry['structure']}: {entry['reason']}")

    print("\n" + "=" * 70)
