"""
Execution contexts: the isolated runtimes a bootstrap program is installed into.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from runbox import protocol
from runbox.schemas import Message

MessageHandler = Callable[["ExecutionContext", Message], None]

# Reads the bootstrap program from stdin so its size is not bounded by argv.
CHILD_LOADER = """
import sys
_source = sys.stdin.read()
sys.stdin.close()
exec(compile(_source, "<bootstrap>", "exec"))
""".strip()

_ids = itertools.count(1)

# strong references to reap tasks for killed children until they finish
_reap_tasks: set[asyncio.Task[int]] = set()

# one envelope per line; large console payloads must fit
_STREAM_LIMIT = 16 * 1024 * 1024


def _next_context_id(prefix: str) -> str:
    return f"{prefix}-{next(_ids)}"


class ExecutionContext(Protocol):
    context_id: str
    created_at: datetime

    def on_message(self, handler: MessageHandler) -> None: ...

    async def send(self, program: str) -> None: ...

    def destroy(self) -> None: ...


class ContextFactory(Protocol):
    def create(self) -> ExecutionContext: ...


class SubprocessContext:
    """
    Runs each installed program in a fresh child interpreter.

    Installing a new program kills whatever the previous one left running.
    Envelopes read from the child's stdout are handed to the registered
    handler in the order the child wrote them.
    """

    context_id: str
    created_at: datetime

    def __init__(
        self,
        python_executable: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.context_id = _next_context_id("proc")
        self.created_at = datetime.now(timezone.utc)
        self.python_executable = python_executable or sys.executable
        self.logger = logger or logging.getLogger(__name__)
        self._handler: MessageHandler | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._destroyed = False

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        project_root = str(Path(__file__).resolve().parents[1])
        existing_pythonpath = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = (
            f"{project_root}{os.pathsep}{existing_pythonpath}"
            if existing_pythonpath
            else project_root
        )
        env["PYTHONIOENCODING"] = "utf-8"
        env["PYTHONUNBUFFERED"] = "1"
        return env

    async def send(self, program: str) -> None:
        if self._destroyed:
            raise RuntimeError(f"Context {self.context_id} has been destroyed")
        self._stop_current()

        process = await asyncio.create_subprocess_exec(
            self.python_executable,
            "-c",
            CHILD_LOADER,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._child_env(),
            limit=_STREAM_LIMIT,
        )
        self._process = process
        assert process.stdin is not None
        try:
            process.stdin.write(program.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self.logger.debug("Child %s closed stdin early: %s", self.context_id, exc)
        finally:
            process.stdin.close()

        self._readers = [
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            if self._destroyed or process is not self._process:
                continue
            message = protocol.decode_message(line)
            if message is None:
                self.logger.debug("Ignoring non-protocol output from %s", self.context_id)
                continue
            if self._handler is None:
                continue
            try:
                self._handler(self, message)
            except Exception:  # noqa: BLE001
                self.logger.exception("Message handler failed for %s", self.context_id)
        _ = await process.wait()

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            self.logger.debug(
                "[%s stderr] %s",
                self.context_id,
                line.decode("utf-8", errors="replace").rstrip(),
            )

    def _stop_current(self) -> None:
        for reader in self._readers:
            reader.cancel()
        self._readers = []
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        # reap the killed child so its transport is closed
        task = loop.create_task(process.wait())
        _reap_tasks.add(task)
        task.add_done_callback(_reap_tasks.discard)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._stop_current()
        self._handler = None
        self.logger.debug("Destroyed context %s", self.context_id)


class SubprocessContextFactory:
    def __init__(
        self,
        python_executable: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.python_executable = python_executable
        self.logger = logger or logging.getLogger(__name__)

    def create(self) -> SubprocessContext:
        return SubprocessContext(self.python_executable, logger=self.logger)


class FakeContext:
    """In-process context double: records programs and delivers scripted envelopes."""

    context_id: str
    created_at: datetime

    def __init__(self) -> None:
        self.context_id = _next_context_id("fake")
        self.created_at = datetime.now(timezone.utc)
        self.programs: list[str] = []
        self.destroyed = False
        self._handler: MessageHandler | None = None

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def send(self, program: str) -> None:
        if self.destroyed:
            raise RuntimeError(f"Context {self.context_id} has been destroyed")
        self.programs.append(program)

    def destroy(self) -> None:
        self.destroyed = True

    def emit(self, kind: str, *args: object, secret: str, authenticated: bool = True) -> None:
        """Deliver an envelope as if the running program had written it."""
        if self._handler is None:
            return
        message = protocol.decode_message(protocol.encode_message(secret, kind, args))
        if message is None:
            return
        if not authenticated:
            message = message.model_copy(update={"authenticated": False})
        self._handler(self, message)

    def emit_raw(self, line: str) -> None:
        if self._handler is None:
            return
        message = protocol.decode_message(line)
        if message is not None:
            self._handler(self, message)


class FakeContextFactory:
    def __init__(self) -> None:
        self.created: list[FakeContext] = []

    def create(self) -> FakeContext:
        context = FakeContext()
        self.created.append(context)
        return context

    @property
    def latest(self) -> FakeContext:
        return self.created[-1]
