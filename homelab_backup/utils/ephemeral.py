"""
Single-use secret files.

Some external tools only accept secrets through a file (ssh-add reads the
key passphrase from an SSH_ASKPASS helper). EphemeralSecretFile writes the
secret into a private directory right before it is needed and removes both
the file and the directory when the block exits, on success, error or
interrupt alike.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional


class EphemeralSecretFile:
    """
    Context manager for a one-shot secret file.

    Usage:
        with EphemeralSecretFile(script, mode=0o700, suffix='.sh') as path:
            subprocess.run([...], env={'SSH_ASKPASS': str(path)})
    """

    def __init__(self, content: str, mode: int = 0o600, suffix: str = '', dir: Optional[str] = None):
        self.content = content
        self.mode = mode
        self.suffix = suffix
        self.parent_dir = dir
        self.path: Optional[Path] = None
        self._private_dir: Optional[str] = None

    def __enter__(self) -> Path:
        # mkdtemp creates the directory with mode 0700
        self._private_dir = tempfile.mkdtemp(prefix='hlb-secret-', dir=self.parent_dir)
        try:
            self.path = Path(self._private_dir) / f'secret{self.suffix}'
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'w') as f:
                f.write(self.content)
            os.chmod(self.path, self.mode)
        except BaseException:
            self.destroy()
            raise
        return self.path

    def __exit__(self, exc_type, exc, tb):
        self.destroy()
        return False

    def destroy(self):
        """Remove the secret file and its directory. Safe to call twice."""
        if self.path is not None:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self.path = None

        if self._private_dir is not None:
            shutil.rmtree(self._private_dir, ignore_errors=True)
            self._private_dir = None
