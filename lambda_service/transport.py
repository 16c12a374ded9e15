"""
Transport layer for talking to a long-lived tool subprocess.

Implements StdioTransport: newline-delimited JSON over the stdin/stdout
pipes of a child process, driven by the asyncio event loop.

    ┌──────────────┐   one JSON message per line   ┌──────────────┐
    │ RpcSession   │ ───────── stdin ───────────▶ │  tool server  │
    │              │ ◀──────── stdout ─────────── │  (subprocess) │
    └──────────────┘                               └──────────────┘

Reads are chunked, not line-buffered: a chunk may carry zero, one or many
messages and usually ends in a partial line. LineBuffer reassembles them.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable

from lambda_service.errors import SpawnError, TransportClosedError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

MessageCallback = Callable[[dict[str, Any]], None]
ExitCallback = Callable[[int | None], None]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request. A request without an id is a notification."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0"}
        if self.id is not None:
            message["id"] = self.id
        message["method"] = self.method
        message["params"] = self.params
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, parsed: dict[str, Any]) -> JsonRpcResponse:
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


class LineBuffer:
    """
    Reassembles newline-delimited JSON messages from arbitrary chunks.

    Everything up to the last newline is complete; the trailing fragment
    (possibly empty) is kept for the next chunk.
    """

    def __init__(self):
        self.pending = ""

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        """Append a chunk and return every message it completed, in order."""
        self.pending += chunk
        *lines, self.pending = self.pending.split("\n")

        messages = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                messages.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Discarding unparseable line from tool server: {e}: {line[:200]}")
        return messages


def augmented_env(bin_dir: str | None = None, base: dict[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment with ``bin_dir`` prepended to PATH."""
    env = dict(os.environ if base is None else base)
    if bin_dir:
        current = env.get("PATH", "")
        env["PATH"] = f"{bin_dir}{os.pathsep}{current}" if current else bin_dir
    return env


class StdioTransport:
    """
    JSON over stdin/stdout pipes to a subprocess.

    Incoming messages are pushed to ``on_message``; process exit is pushed
    to ``on_exit``. The transport never restarts the process by itself.
    """

    def __init__(
        self,
        command: list[str],
        bin_dir: str | None = None,
        on_message: MessageCallback | None = None,
        on_exit: ExitCallback | None = None,
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["workiq", "mcp"]
            bin_dir: Directory prepended to PATH for the child.
            on_message: Called with each parsed incoming message.
            on_exit: Called with the return code once the process exits.
        """
        self.command = command
        self.bin_dir = bin_dir
        self.on_message = on_message
        self.on_exit = on_exit
        self.buffer = LineBuffer()
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._stderr_reader: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Launch the tool server subprocess."""
        if self.is_alive():
            logger.warning("Transport already running, stopping first")
            await self.stop()

        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        self.buffer = LineBuffer()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=augmented_env(self.bin_dir),
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {self.command[0]}: {e}") from e

        self._reader = asyncio.create_task(self._read_stdout(self._process))
        self._stderr_reader = asyncio.create_task(self._read_stderr(self._process))

    async def stop(self) -> None:
        """Terminate the tool server subprocess."""
        process, self._process = self._process, None
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        for task in (self._reader, self._stderr_reader):
            if task and not task.done():
                task.cancel()
        self._reader = self._stderr_reader = None
        logger.info("Stdio transport stopped")

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.returncode is None

    async def send(self, message: dict[str, Any]) -> None:
        """Write one message followed by a newline. No acknowledgement."""
        if not self.is_alive() or self._process.stdin is None:
            raise TransportClosedError("Transport not running. Call start() first.")

        line = json.dumps(message) + "\n"
        logger.debug(f"--> {line.rstrip()}")
        try:
            self._process.stdin.write(line.encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportClosedError(f"Tool server pipe closed: {e}") from e

    def feed(self, chunk: str) -> None:
        """Dispatch every complete message in ``chunk``."""
        for message in self.buffer.feed(chunk):
            logger.debug(f"<-- {message}")
            if self.on_message is None:
                continue
            try:
                self.on_message(message)
            except Exception:
                # The reader must outlive a bad message.
                logger.exception(f"Error dispatching message: {message}")

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.feed(decoder.decode(chunk))

        returncode = await process.wait()
        logger.info(f"Tool server exited with code {returncode}")
        if self.on_exit:
            self.on_exit(returncode)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        # The pipe must be drained or a chatty child blocks on write.
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(f"[stderr] {line.decode('utf-8', errors='replace').rstrip()}")
