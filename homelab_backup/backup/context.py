"""
Per-run state: the run context passed to every pipeline step and the
staging area it owns.
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .retention import classify_retention

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'

# Canonical top-level entries of a staging area / archive, in archive order
STAGING_SUBTREES = ('databases', 'stacks', 'secrets', 'additional')


@dataclass(frozen=True)
class RunContext:
    """Immutable facts about one backup run."""
    hostname: str
    started_at: datetime
    staging_root: Path
    dry_run: bool = False
    compression_format: str = 'tar.gz'

    @property
    def timestamp(self) -> str:
        return self.started_at.strftime(TIMESTAMP_FORMAT)

    @property
    def retention_class(self) -> str:
        return classify_retention(self.started_at.date())

    def subtree(self, name: str) -> Path:
        """Path of a canonical staging subtree (not created)."""
        if name not in STAGING_SUBTREES:
            raise ValueError(f"Unknown staging subtree: {name}")
        return self.staging_root / name


class StagingArea:
    """
    Private working directory for one run.

    The directory is created with mode 0700 on enter and removed on exit,
    whatever the exit path.
    """

    def __init__(self, parent_dir: Optional[str] = None, prefix: str = 'backup-staging-'):
        self.parent_dir = parent_dir
        self.prefix = prefix
        self.path: Optional[Path] = None

    def __enter__(self) -> Path:
        if self.parent_dir:
            os.makedirs(self.parent_dir, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.parent_dir))
        logger.info(f"Created staging directory: {self.path}")
        return self.path

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    def cleanup(self):
        if self.path is not None and self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.info(f"Removed staging directory: {self.path}")
        self.path = None
