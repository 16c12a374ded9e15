"""
One-shot CLI fallback: ``workiq ask -q '<query>'``.

Used when the persistent session is unavailable or fails. Each call runs
its own process (in a worker thread) and shares nothing with the session.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import threading

from lambda_service.errors import CliError
from lambda_service.manager import WorkIQSettings
from lambda_service.transport import augmented_env

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
STDERR_JOIN_TIMEOUT = 5.0


def build_cli_command(binary: str, query: str) -> str:
    """
    Shell command line for a one-shot query.

    The query is a single quoted word: an embedded ``'`` is closed,
    emitted as ``"'"`` and reopened, so nothing in it reaches the shell
    as syntax.
    """
    return f"{shlex.quote(binary)} ask -q {shlex.quote(query)}"


def run_cli_query_sync(query: str, settings: WorkIQSettings) -> str:
    """
    Run one CLI query and return its trimmed stdout.

    The child runs in its own process group. It is killed as soon as it
    outlives ``cli_timeout`` or writes more than ``cli_max_output`` bytes.
    """
    command = build_cli_command(settings.binary, query)
    logger.info(f"Running WorkIQ CLI fallback (timeout {settings.cli_timeout:g}s)")
    logger.debug(f"CLI command: {command}")

    try:
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=augmented_env(settings.bin_dir),
            start_new_session=True,
        )
    except OSError as e:
        raise CliError(f"WorkIQ CLI could not be started: {e}") from e

    stderr_chunks: list[bytes] = []
    stderr_reader = threading.Thread(target=lambda: stderr_chunks.append(process.stderr.read()), daemon=True)
    stderr_reader.start()

    timed_out = threading.Event()

    def expire() -> None:
        if process.poll() is None:
            timed_out.set()
            _kill(process)

    timer = threading.Timer(settings.cli_timeout, expire)
    timer.start()

    stdout = bytearray()
    overflow = False
    try:
        while True:
            chunk = process.stdout.read1(READ_CHUNK_SIZE)
            if not chunk:
                break
            stdout.extend(chunk)
            if len(stdout) > settings.cli_max_output:
                overflow = True
                _kill(process)
                break
        process.wait()
    finally:
        timer.cancel()
        process.stdout.close()

    stderr_reader.join(timeout=STDERR_JOIN_TIMEOUT)
    stderr = _decode(b"".join(stderr_chunks)).strip()

    if overflow:
        raise CliError(f"WorkIQ CLI output exceeded {settings.cli_max_output} bytes", stderr)
    if timed_out.is_set():
        raise CliError(f"WorkIQ CLI timed out after {settings.cli_timeout:g}s", stderr)
    if process.returncode != 0:
        raise CliError(f"WorkIQ CLI exited with code {process.returncode}", stderr)

    return _decode(bytes(stdout)).strip()


async def run_cli_query(query: str, settings: WorkIQSettings) -> str:
    """Run the fallback without blocking the event loop."""
    return await asyncio.to_thread(run_cli_query_sync, query, settings)


def _kill(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")
