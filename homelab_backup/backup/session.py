"""
Credential session: a private ssh-agent holding the passphrase-protected
backup key for the lifetime of one run.

The agent listens on a socket inside a fresh 0700 directory and is never
shared with (or taken from) the caller's environment. The passphrase
reaches ssh-add through a single-use SSH_ASKPASS helper that is deleted as
soon as ssh-add returns.
"""

import os
import re
import shlex
import signal
import socket
import shutil
import logging
import tempfile
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from paramiko.agent import AgentSSH

from homelab_backup.utils.ephemeral import EphemeralSecretFile

logger = logging.getLogger(__name__)

_AGENT_PID_RE = re.compile(r'SSH_AGENT_PID=(\d+)')


class AuthError(Exception):
    """Raised when the agent cannot start or the key cannot be unlocked."""
    pass


class SessionAgent(AgentSSH):
    """paramiko agent client bound to an explicit socket path."""

    def __init__(self, socket_path: str):
        super().__init__()
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.connect(socket_path)
        except OSError:
            conn.close()
            raise
        self._connect(conn)

    def close(self):
        self._close()


class CredentialSession:
    """
    Scoped ssh-agent session.

    Use as a context manager; close() runs on every exit path:

        with CredentialSession(key_path, passphrase) as session:
            keys = session.agent().get_keys()
    """

    def __init__(self, key_path, passphrase: str, timeout: int = 30):
        self.key_path = Path(key_path)
        self._passphrase = passphrase
        self.timeout = timeout
        self.socket_dir: Optional[str] = None
        self.socket_path: Optional[str] = None
        self.agent_pid: Optional[int] = None
        self._agent: Optional[SessionAgent] = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def is_open(self) -> bool:
        return self.agent_pid is not None

    def open(self):
        """
        Start the agent and add the key.

        Raises:
            AuthError: If the key is missing, the agent fails to start or the passphrase is rejected
        """
        if not self.key_path.is_file():
            raise AuthError(f"SSH key not found: {self.key_path}")

        try:
            self._start_agent()
            self._add_key()
        except BaseException:
            self.close()
            raise

        logger.info("SSH key added to agent")

    def _start_agent(self):
        self.socket_dir = tempfile.mkdtemp(prefix='hlb-agent-')
        self.socket_path = os.path.join(self.socket_dir, 'agent.sock')

        try:
            result = subprocess.run(
                ['ssh-agent', '-s', '-a', self.socket_path],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={'PATH': os.environ.get('PATH', '/usr/bin:/bin')}
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise AuthError(f"Failed to start ssh-agent: {e}")

        match = _AGENT_PID_RE.search(result.stdout or '')
        if result.returncode != 0 or not match:
            raise AuthError(f"Failed to start ssh-agent: {(result.stderr or '').strip() or 'no PID reported'}")

        self.agent_pid = int(match.group(1))
        logger.info(f"ssh-agent started (PID: {self.agent_pid})")

    def _add_key(self):
        askpass_script = f"#!/bin/sh\nprintf '%s\\n' {shlex.quote(self._passphrase)}\n"

        with EphemeralSecretFile(askpass_script, mode=0o700, suffix='.sh') as askpass:
            env = {
                'PATH': os.environ.get('PATH', '/usr/bin:/bin'),
                'SSH_AUTH_SOCK': self.socket_path,
                'SSH_ASKPASS': str(askpass),
                'SSH_ASKPASS_REQUIRE': 'force',
                'DISPLAY': os.environ.get('DISPLAY', ':0'),
            }
            try:
                result = subprocess.run(
                    ['ssh-add', str(self.key_path)],
                    stdin=subprocess.DEVNULL,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    env=env
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise AuthError(f"Failed to run ssh-add: {e}")

        if result.returncode != 0:
            raise AuthError(
                f"Failed to add SSH key {self.key_path}: {(result.stderr or '').strip() or 'passphrase rejected'}"
            )

    def agent(self) -> SessionAgent:
        """
        Agent client connected to this session's socket.

        Raises:
            AuthError: If the session is not open
        """
        if not self.is_open:
            raise AuthError("Credential session is not open")
        if self._agent is None:
            try:
                self._agent = SessionAgent(self.socket_path)
            except OSError as e:
                raise AuthError(f"Cannot connect to ssh-agent: {e}")
        return self._agent

    def close(self):
        """Terminate the agent and remove its socket directory. Idempotent."""
        if self._agent is not None:
            self._agent.close()
            self._agent = None

        if self.agent_pid is not None:
            try:
                os.kill(self.agent_pid, signal.SIGTERM)
                logger.info(f"Stopped ssh-agent (PID: {self.agent_pid})")
            except ProcessLookupError:
                pass
            self.agent_pid = None

        if self.socket_dir is not None:
            shutil.rmtree(self.socket_dir, ignore_errors=True)
            self.socket_dir = None
            self.socket_path = None


@contextmanager
def open_session(key_path, passphrase: str):
    """Acquire a CredentialSession and release it on every exit path."""
    session = CredentialSession(key_path, passphrase)
    session.open()
    try:
        yield session
    finally:
        session.close()
