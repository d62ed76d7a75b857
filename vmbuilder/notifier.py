"""Delivery of VM creation outcomes to caller-supplied callback URLs."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import requests

from vmbuilder.constants import DEFAULT_CALLBACK_RETRIES, DEFAULT_CALLBACK_TIMEOUT
from vmbuilder.utils import log


class Notifier:
    def __init__(
        self,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        retries: int = DEFAULT_CALLBACK_RETRIES,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self.session = session or requests.Session()

    def notify(self, url: str, payload: Dict[str, Any]) -> bool:
        """POST ``payload`` as JSON to ``url``; returns whether it was accepted."""
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.post(url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                if attempt < attempts:
                    time.sleep(min(2 ** attempt, 30))
                    continue
                log("ERROR", f"Callback to {url} failed: {exc}")
                return False
            log("DEBUG", f"Callback to {url} delivered ({response.status_code})")
            return True
        return False
