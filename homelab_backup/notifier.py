"""
Healthchecks.io style monitoring pings.

Delivery is best effort: every request has a short timeout and a bounded
number of retries, and no failure ever reaches the caller.
"""

import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class Notifier:
    """
    Sends start/success/fail signals for backups and a reset signal for
    key rotation. With no URL configured every method is a no-op.
    """

    def __init__(
        self,
        backup_url: Optional[str] = None,
        rotation_url: Optional[str] = None,
        timeout: float = 10,
        retries: int = 5
    ):
        self.backup_url = backup_url.rstrip('/') if backup_url else None
        self.rotation_url = rotation_url or None
        self.timeout = timeout

        self.session = requests.Session()
        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=None,  # retry POST too, pings are idempotent
            raise_on_status=False
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

    @classmethod
    def from_record(cls, record) -> 'Notifier':
        """Build a notifier from a CredentialRecord."""
        return cls(
            backup_url=record.get('HEALTHCHECK_BACKUP_URL'),
            rotation_url=record.get('HEALTHCHECK_ROTATION_URL')
        )

    @property
    def enabled(self) -> bool:
        return self.backup_url is not None

    def start(self) -> bool:
        return self._ping(self.backup_url, '/start')

    def success(self, summary: str = '') -> bool:
        return self._ping(self.backup_url, '', summary)

    def fail(self, summary: str = '') -> bool:
        return self._ping(self.backup_url, '/fail', summary)

    def rotation(self) -> bool:
        """Reset the key-rotation reminder timer."""
        if not self.rotation_url:
            logger.warning("No HEALTHCHECK_ROTATION_URL configured - skipping ping")
            return False
        return self._ping(self.rotation_url, '')

    def _ping(self, base_url: Optional[str], endpoint: str, message: str = '') -> bool:
        """
        Deliver one ping.

        Returns:
            True if the endpoint answered with a success status
        """
        if not base_url:
            return False

        url = f"{base_url}{endpoint}"
        try:
            if message:
                response = self.session.post(url, data=message.encode('utf-8'), timeout=self.timeout)
            else:
                response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Monitoring ping to {url} failed: {e}")
            return False
