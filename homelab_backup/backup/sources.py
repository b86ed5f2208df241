"""
Source collectors for backup operations.

Supports:
- DatabaseCollector: Dump a database from a running container
- StackCollector: Copy the bind-mount data of one compose stack
- PathCollector: Copy an arbitrary file or directory

Every collector writes only into its own staging subtree. A collector that
cannot do its job either returns a warning or raises CollectorError; the
executor records both as warnings and carries on.
"""

import os
import shutil
import logging
import subprocess
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional

from homelab_backup.credentials import DatabaseDumpSpec
from .context import RunContext

logger = logging.getLogger(__name__)

# Compose/build descriptors live in git, not in backups
DEFAULT_STACK_EXCLUDES = ('*.yml', '*.yaml', 'docker-compose*')

# Tried in order; older MariaDB images only ship mysqldump
DUMP_TOOLS = ('mariadb-dump', 'mysqldump')


class CollectorError(Exception):
    """Raised when a collector fails to copy its source."""
    pass


@dataclass
class CollectorResult:
    """Outcome of one collector run."""
    name: str
    files_copied: int = 0
    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)


def _count_files(path: Path) -> int:
    if path.is_dir() and not path.is_symlink():
        return sum(1 for p in path.rglob('*') if not p.is_dir() or p.is_symlink())
    return 1


def _copy_entry(source: Path, dest: Path) -> int:
    """Copy a file, symlink or directory preserving attributes (cp -a)."""
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, dest, symlinks=True, copy_function=shutil.copy2)
    else:
        shutil.copy2(source, dest, follow_symlinks=False)
    return _count_files(dest)


class DatabaseCollector:
    """
    Dumps one MariaDB/MySQL database from a running container.

    The database password is expanded from the container's own
    environment inside the container at dump time.
    """

    def __init__(self, spec: DatabaseDumpSpec, dump_tools=DUMP_TOOLS):
        self.spec = spec
        self.dump_tools = tuple(dump_tools)

    @property
    def name(self) -> str:
        return f"database:{self.spec.label}"

    def is_container_running(self) -> bool:
        """
        Check `docker ps` for an exact container name match.

        Raises:
            CollectorError: If docker cannot be queried
        """
        try:
            result = subprocess.run(
                ['docker', 'ps', '--format', '{{.Names}}'],
                capture_output=True,
                text=True,
                check=False
            )
        except OSError as e:
            raise CollectorError(f"Failed to run docker: {e}")

        if result.returncode != 0:
            raise CollectorError(f"docker ps failed: {result.stderr.strip()}")

        return self.spec.container in result.stdout.splitlines()

    def _dump_command(self, tool: str) -> List[str]:
        script = (
            f'exec "$0" --user="$1" --password="${{{self.spec.password_env}}}" '
            '--single-transaction --routines --triggers "$2"'
        )
        return [
            'docker', 'exec', self.spec.container,
            'sh', '-c', script,
            tool, self.spec.user, self.spec.database
        ]

    def collect(self, dest_subtree: Path, context: RunContext) -> CollectorResult:
        """
        Dump the database into dest_subtree/{label}-{timestamp}.sql.

        Raises:
            CollectorError: If every dump tool fails
        """
        result = CollectorResult(self.name)

        if not self.is_container_running():
            result.warn(f"{self.spec.label} container not running: {self.spec.container}")
            return result

        if context.dry_run:
            logger.info(f"[DRY-RUN] Would dump database: {self.spec.database} from {self.spec.container}")
            return result

        dest_subtree.mkdir(parents=True, exist_ok=True)
        dump_path = dest_subtree / f"{self.spec.label}-{context.timestamp}.sql"

        errors = []
        for tool in self.dump_tools:
            logger.info(f"Dumping {self.spec.database} from {self.spec.container} with {tool}")
            try:
                with open(dump_path, 'wb') as fh:
                    proc = subprocess.run(
                        self._dump_command(tool),
                        stdout=fh,
                        stderr=subprocess.PIPE,
                        check=False
                    )
            except OSError as e:
                proc = None
                errors.append(f"{tool}: {e}")

            if proc is not None and proc.returncode == 0:
                result.files_copied = 1
                logger.info(f"{self.spec.label} database dumped with {tool}")
                return result

            if proc is not None:
                stderr = proc.stderr.decode(errors='replace').strip() if proc.stderr else ''
                errors.append(f"{tool}: exit {proc.returncode} {stderr}".strip())

            # Never leave a truncated dump behind
            if dump_path.exists():
                dump_path.unlink()

        raise CollectorError(f"Failed to dump {self.spec.label} database ({'; '.join(errors)})")


class StackCollector:
    """
    Copies the bind-mount data of one compose stack.

    Every immediate child of {homelab}/stacks/{stack} is copied except
    compose/build descriptor files.
    """

    def __init__(self, homelab_path, stack: str, exclude_patterns: Optional[List[str]] = None):
        self.homelab_path = Path(homelab_path)
        self.stack = stack
        self.exclude_patterns = list(DEFAULT_STACK_EXCLUDES) + list(exclude_patterns or [])

    @property
    def name(self) -> str:
        return f"stack:{self.stack}"

    @property
    def stack_path(self) -> Path:
        return self.homelab_path / 'stacks' / self.stack

    def _should_exclude(self, path: Path) -> bool:
        """Descriptor patterns apply to files only; directories are always copied."""
        if path.is_dir() and not path.is_symlink():
            return False
        return any(fnmatch(path.name, pattern) for pattern in self.exclude_patterns)

    def collect(self, dest_subtree: Path, context: RunContext) -> CollectorResult:
        """
        Copy the stack into dest_subtree/{stack}/.

        Raises:
            CollectorError: If copying fails
        """
        result = CollectorResult(self.name)
        source = self.stack_path

        if not source.is_dir():
            result.warn(f"Stack directory not found: {source}")
            return result

        entries = [entry for entry in sorted(source.iterdir()) if not self._should_exclude(entry)]

        if context.dry_run:
            logger.info(f"[DRY-RUN] Would backup: {source} ({len(entries)} entries)")
            return result

        dest = dest_subtree / self.stack
        dest.mkdir(parents=True, exist_ok=True)

        for entry in entries:
            try:
                result.files_copied += _copy_entry(entry, dest / entry.name)
                logger.debug(f"Copied: {entry.name}")
            except PermissionError as e:
                raise CollectorError(f"Permission denied accessing {entry}: {e}")
            except (OSError, shutil.Error) as e:
                raise CollectorError(f"Failed to copy {entry}: {e}")

        logger.info(f"Backed up stack {self.stack}: {result.files_copied} files")
        return result


class PathCollector:
    """Copies one file or directory to additional/{basename}."""

    def __init__(self, path):
        self.path = Path(path).expanduser()

    @property
    def name(self) -> str:
        return f"path:{self.path}"

    def collect(self, dest_subtree: Path, context: RunContext) -> CollectorResult:
        """
        Raises:
            CollectorError: If copying fails
        """
        result = CollectorResult(self.name)

        if not os.path.lexists(self.path):
            result.warn(f"Additional path not found: {self.path}")
            return result

        if context.dry_run:
            logger.info(f"[DRY-RUN] Would backup: {self.path}")
            return result

        dest_subtree.mkdir(parents=True, exist_ok=True)
        dest = dest_subtree / self.path.name
        try:
            result.files_copied = _copy_entry(self.path, dest)
        except PermissionError as e:
            raise CollectorError(f"Permission denied accessing {self.path}: {e}")
        except (OSError, shutil.Error) as e:
            raise CollectorError(f"Failed to copy {self.path}: {e}")

        logger.info(f"Backed up: {self.path}")
        return result


def create_collectors(record) -> List[tuple]:
    """
    Build the collector list for a credential record.

    Returns:
        List of (subtree name, collector) pairs in run order
    """
    collectors = []

    for spec in record.databases:
        collectors.append(('databases', DatabaseCollector(spec)))

    homelab = record.get('DOCKER_HOMELAB_PATH')
    for stack in record.stacks:
        collectors.append(('stacks', StackCollector(homelab, stack, record.stack_excludes)))

    for path in record.additional_paths:
        collectors.append(('additional', PathCollector(path)))

    return collectors
