"""Output staging.

Moves a verified binary into the output directory atomically: the binary is
first moved to a hidden temporary file in the destination directory and then
renamed over the final name, so readers see either the old file or the
complete new one. The build tree does not keep a copy.
"""

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from ..errors import StagingError
from .executor import Artifact

logger = logging.getLogger(__name__)


class OutputStager:
    """Stages artifacts into output directories."""

    def stage(self, artifact: Artifact, output_dir: Path, name: str) -> Path:
        """Publish an artifact as ``output_dir/name``.

        Args:
            artifact: Verified artifact
            output_dir: Destination directory (created if missing)
            name: File name of the staged binary

        Returns:
            Path to the staged binary

        Raises:
            StagingError: If the artifact cannot be staged
        """
        output_dir = Path(output_dir)
        dest = output_dir / name
        temp_path = None
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=output_dir)
            os.close(fd)
            temp_path = Path(temp_name)

            shutil.move(str(artifact.path), str(temp_path))
            mode = temp_path.stat().st_mode
            temp_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            os.replace(temp_path, dest)
            temp_path = None
        except OSError as e:
            raise StagingError(f"Failed to stage {artifact.path} to {dest}: {e}") from e
        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

        logger.info(f"Staged {dest}")
        return dest
