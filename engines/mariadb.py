"""MariaDB engine: mariadb-backup based hot copies, mbstream/gzip streaming."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path

from config import Config, ConfigError
from . import STREAM_FILENAME, Engine

log = logging.getLogger(__name__)

# Tried in order; mariabackup is the pre-10.5 name.
_BINARY_NAMES = ("mariadb-backup", "mariabackup")

_SECRET_OPTIONS = ("--password=",)


def find_binary() -> str:
    """Return the first backup binary found in PATH."""
    for name in _BINARY_NAMES:
        if shutil.which(name):
            return name
    raise ConfigError("Could not find 'mariadb-backup' or 'mariabackup' in PATH.")


def mask_command(cmd: list[str]) -> str:
    """Render *cmd* for logging with secrets replaced."""
    parts = []
    for part in cmd:
        for option in _SECRET_OPTIONS:
            if part.startswith(option):
                part = option + "****"
        parts.append(part)
    return " ".join(parts)


def _read_stderr(handle) -> str:
    handle.seek(0)
    return handle.read().decode(errors="replace").strip()


class MariaBackupEngine(Engine):
    def __init__(
        self,
        binary: str,
        data_dir: str | Path,
        socket_path: str | Path,
        timeout: float | None = None,
        owner: str = "mysql:mysql",
    ):
        self.binary = binary
        self.data_dir = Path(data_dir)
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.owner = owner

    # -- private helpers --------------------------------------------------

    @staticmethod
    def _env() -> dict[str, str]:
        """Minimal environment for the backup tools.

        Only passes through PATH and essential locale variables to avoid
        leaking unrelated secrets from the parent environment.
        """
        env: dict[str, str] = {}
        for key in ("PATH", "HOME", "LANG", "LC_ALL", "LC_CTYPE", "TZ"):
            val = os.environ.get(key)
            if val is not None:
                env[key] = val
        return env

    def _run(self, cmd: list[str], what: str) -> None:
        log.debug("Running: %s", mask_command(cmd))
        try:
            result = subprocess.run(
                cmd,
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"{what} timed out after {self.timeout}s") from None
        if result.returncode != 0:
            raise RuntimeError(
                f"{what} failed (exit {result.returncode}): {result.stderr.strip()[-2000:]}"
            )

    def _wait_pipeline(self, procs: list[subprocess.Popen]) -> None:
        """Wait for all processes in a pipeline, respecting a shared timeout.

        On timeout: kills all processes and raises TimeoutError.
        """
        if self.timeout is None:
            for p in procs:
                p.wait()
            return
        deadline = time.monotonic() + self.timeout
        for p in procs:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                p.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                for q in procs:
                    q.kill()
                for q in procs:
                    q.wait()
                raise TimeoutError(
                    f"Pipeline timed out after {self.timeout}s"
                ) from None

    def _pipe(self, producer: list[str], consumer: list[str], what: str,
              stdin=None, stdout=None) -> None:
        """Run `producer | consumer`, raising RuntimeError if either fails."""
        log.debug("Running: %s | %s", mask_command(producer), mask_command(consumer))
        # stderr goes to files: mariadb-backup logs far more than a pipe buffer holds
        with tempfile.TemporaryFile() as producer_err, tempfile.TemporaryFile() as consumer_err:
            producer_proc = subprocess.Popen(
                producer,
                env=self._env(),
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=producer_err,
            )
            consumer_proc = subprocess.Popen(
                consumer,
                env=self._env(),
                stdin=producer_proc.stdout,
                stdout=stdout,
                stderr=consumer_err,
            )
            # Allow the producer to receive SIGPIPE if the consumer exits early
            producer_proc.stdout.close()
            self._wait_pipeline([consumer_proc, producer_proc])

            errors = []
            if producer_proc.returncode != 0:
                errors.append(
                    f"{producer[0]} failed (exit {producer_proc.returncode}): "
                    f"{_read_stderr(producer_err)[-2000:]}"
                )
            if consumer_proc.returncode != 0:
                errors.append(
                    f"{consumer[0]} failed (exit {consumer_proc.returncode}): "
                    f"{_read_stderr(consumer_err)[-2000:]}"
                )
        if errors:
            raise RuntimeError(f"{what}: {'; '.join(errors)}")

    def backup_command(self, plan) -> list[str]:
        """Build the mariadb-backup invocation for *plan*."""
        cmd = [self.binary]
        if plan.parent is not None:
            cmd.append(f"--incremental-basedir={plan.parent}")
        if plan.compressed:
            cmd.extend(["--stream=mbstream", f"--extra-lsndir={plan.checkpoint_dir}"])
        cmd.extend([
            "--backup",
            f"--target-dir={plan.target_dir}",
            f"--user={plan.user}",
            f"--password={plan.password}",
            f"--parallel={plan.workers}",
        ])
        return cmd

    # -- Engine interface -------------------------------------------------

    def check_connectivity(self) -> None:
        if not self.socket_path.is_socket():
            raise ConfigError(
                f"MariaDB socket not found at {self.socket_path}. Ensure the service is running."
            )

    def backup(self, plan) -> None:
        cmd = self.backup_command(plan)
        if not plan.compressed:
            self._run(cmd, "mariadb-backup --backup")
            return

        output_path = Path(plan.target_dir) / STREAM_FILENAME
        # Open with 0o600 to prevent other users from reading database copies
        fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as outfile:
            self._pipe(cmd, ["gzip", "-c"], "Streamed backup", stdout=outfile)

    def extract(self, source_dir: Path, dest_dir: Path) -> None:
        archive = Path(source_dir) / STREAM_FILENAME
        Path(dest_dir).mkdir(parents=True, exist_ok=True)
        self._pipe(
            ["gunzip", "-c", str(archive)],
            ["mbstream", "-x", "-C", str(dest_dir)],
            f"Extracting {archive}",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
        )

    def prepare(self, base_dir: Path, incremental_dir: Path | None = None) -> None:
        cmd = [self.binary, "--prepare", f"--target-dir={base_dir}"]
        if incremental_dir is not None:
            cmd.append(f"--incremental-dir={incremental_dir}")
        self._run(cmd, "mariadb-backup --prepare")

    def move_back(self, base_dir: Path) -> None:
        self._run(
            [self.binary, "--move-back", f"--target-dir={base_dir}", f"--datadir={self.data_dir}"],
            "mariadb-backup --move-back",
        )

    def fix_ownership(self, data_dir: Path) -> None:
        self._run(["chown", "-R", self.owner, str(data_dir)], "chown")


def create(cfg: Config) -> MariaBackupEngine:
    return MariaBackupEngine(
        binary=find_binary(),
        data_dir=cfg.data_dir,
        socket_path=cfg.socket_path,
        timeout=cfg.timeout,
    )
