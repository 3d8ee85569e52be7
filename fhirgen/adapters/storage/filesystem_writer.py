"""Filesystem output adapter.

Writes emitted files into the output package directory.

Behaviour:
    - Files are written to a temporary name and renamed into place, so a
      reader never sees a half-written module
    - Modules left over from a previous run are removed, but only files
      carrying the generator's marker line; hand-written files are never
      deleted or overwritten
    - Paths are returned in sorted order
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from fhirgen.adapters.emitters.pydantic_emitter import GENERATED_MARKER
from fhirgen.domain.ports import EmissionError, EmittedFile, OutputPort, Result

logger = logging.getLogger(__name__)


def is_generated(path: Path) -> bool:
    """Whether a file starts with the generator's marker line."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.readline().startswith(GENERATED_MARKER)
    except (OSError, UnicodeDecodeError):
        return False


class FilesystemWriter(OutputPort):
    """Writes emitted files below an output directory.

    Parameters:
        package_name: Optional sub-directory (the importable package name)
        remove_stale: Delete generated files not produced by this run
    """

    def __init__(self, package_name: Optional[str] = None, remove_stale: bool = True):
        self.package_name = package_name
        self.remove_stale = remove_stale

    def target_dir(self, output_dir: Path) -> Path:
        output_dir = Path(output_dir)
        return output_dir / self.package_name if self.package_name else output_dir

    def write(self, files: Sequence[EmittedFile], output_dir: Path) -> Result[List[Path]]:
        """Persist emitted files.

        Returns:
            Result[List[Path]]: Written paths sorted, or a failure carrying an
            EmissionError if a file cannot be written
        """
        target = self.target_dir(output_dir)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return Result.failure_result(EmissionError(message=f"Cannot create output directory: {exc}",
                                                       file=str(target)))

        names = {emitted.path for emitted in files}
        for emitted in files:
            destination = target / emitted.path
            if destination.exists() and not is_generated(destination):
                return Result.failure_result(EmissionError(
                    message="Refusing to overwrite a file that was not generated by fhirgen",
                    file=str(destination),
                ))

        written: List[Path] = []
        for emitted in sorted(files, key=lambda f: f.path):
            destination = target / emitted.path
            temporary = destination.with_name(f".{destination.name}.tmp")
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                with open(temporary, "w", encoding="utf-8", newline="\n") as handle:
                    handle.write(emitted.content)
                os.replace(temporary, destination)
            except OSError as exc:
                return Result.failure_result(EmissionError(message=f"Cannot write file: {exc}",
                                                           file=str(destination)))
            written.append(destination)

        if self.remove_stale:
            for existing in sorted(target.glob("*.py")):
                if existing.name not in names and is_generated(existing):
                    existing.unlink()
                    logger.info(f"Removed stale generated module {existing.name}")

        logger.info(f"Wrote {len(written)} files to {target}")
        return Result.success_result(written)
