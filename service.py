"""Start/stop the database service through systemd or OpenRC."""

from __future__ import annotations

import logging
import shutil
import subprocess

log = logging.getLogger(__name__)

_ACTIONS = ("start", "stop")


class ServiceError(Exception):
    """Raised when the database service cannot be controlled."""


class ServiceController:
    def __init__(self, name: str = "mariadb", timeout: float | None = 120):
        self.name = name
        self.timeout = timeout

    def _command(self, action: str) -> list[str]:
        if shutil.which("systemctl"):
            return ["systemctl", action, self.name]
        if shutil.which("rc-service"):
            return ["rc-service", self.name, action]
        raise ServiceError(
            f"Neither systemctl nor rc-service is available to {action} '{self.name}'."
        )

    def _perform(self, action: str) -> None:
        action = action.lower()
        if action not in _ACTIONS:
            raise ServiceError(
                f"Unsupported service action '{action}'. Supported actions are: {'|'.join(_ACTIONS)}"
            )
        cmd = self._command(action)
        log.info("Service %s: %s", self.name, action)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise ServiceError(f"Service action ({action}) timed out after {self.timeout}s") from None
        if result.returncode != 0:
            raise ServiceError(
                f"Service action ({action}) was not successful: {result.stderr.strip()}"
            )

    def stop(self) -> None:
        self._perform("stop")

    def start(self) -> None:
        self._perform("start")
