# pagewatch/notifier.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from urllib.parse import urljoin

import requests

from .config import DEFAULT_PUSHBULLET_BASE_URL

LOG = logging.getLogger(__name__)


class NotifyError(Exception):
    """Raised when a notification is not delivered (transport error or non-200 status)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Notifier(ABC):
    """
    Delivers one notification per watch-cycle with new items.

    Contract:
      - notify() returns None on success and raises NotifyError otherwise.
      - No retries; a failed delivery is reported once.
    """

    @abstractmethod
    def notify(self, title: str, body: str, *, timeout_sec: float) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


class PushbulletNotifier(Notifier):
    """Pushbullet 'note' pushes over a shared requests session."""

    PUSHES_PATH = "v2/pushes"

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_PUSHBULLET_BASE_URL,
        *,
        session: requests.Session | None = None,
        user_agent: str = "pagewatch/0.1",
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.session = session or requests.Session()
        self.session.headers.update({
            "Access-Token": access_token,
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        })

    @property
    def pushes_url(self) -> str:
        return urljoin(self.base_url, self.PUSHES_PATH)

    def notify(self, title: str, body: str, *, timeout_sec: float) -> None:
        payload = {"title": title, "body": body, "type": "note"}
        try:
            resp = self.session.post(self.pushes_url, json=payload, timeout=timeout_sec)
        except requests.RequestException as e:
            raise NotifyError(f"Push Bullet request failed: {e}") from e

        if resp.status_code != 200:
            raise NotifyError(
                f"Push Bullet returned an unexpected status code {resp.status_code}.",
                status_code=resp.status_code,
            )
        LOG.debug("Push delivered: %r", title)

    def close(self) -> None:
        self.session.close()
