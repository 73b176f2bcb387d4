"""
Isolated execution engine.

One engine owns one execution context at a time. Every ``execute`` call
generates a fresh run secret; inbound messages are accepted only when they
come from the active context and carry the active secret. A run that does not
report completion before the deadline is killed by destroying its context.
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import time
from collections.abc import Callable
from enum import Enum

from runbox.config import SandboxConfig
from runbox.context import ContextFactory, ExecutionContext, SubprocessContextFactory
from runbox.errors import ConfigurationError, ProtocolViolation, TimeoutExceeded
from runbox.libraries import LibraryManager
from runbox.protocol import MessageKind, is_authentic
from runbox.schemas import Message, SyntaxCheck
from runbox.template import USER_CODE_FILENAME, TemplateEngine

DEFAULT_TIMEOUT_MS = 4000

MessageSink = Callable[[str, list[str]], None]
StatusSink = Callable[[str], None]
SecretSource = Callable[[], str]

_logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    TIMEOUT = "timeout"


def generate_secret() -> str:
    """
    Return a single-use run secret.

    Uses the OS entropy source; where none exists, falls back to the
    non-cryptographic ``random`` module plus the clock. The fallback is a
    weaker mode and is logged as such.
    """
    try:
        return secrets.token_hex(16)
    except NotImplementedError:
        _logger.warning("No strong random source available; using weak run secret")
        return f"{random.getrandbits(64):016x}{time.time_ns():x}"


class SandboxEngine:
    """Runs untrusted code and relays its authenticated output to the caller."""

    timeout_ms: int

    def __init__(
        self,
        libraries: LibraryManager | None = None,
        templates: TemplateEngine | None = None,
        context_factory: ContextFactory | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        on_message: MessageSink | None = None,
        on_status: StatusSink | None = None,
        secret_source: SecretSource = generate_secret,
        logger: logging.Logger | None = None,
    ) -> None:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
            raise ConfigurationError(f"timeout_ms must be a positive integer, got {timeout_ms!r}")

        self.logger = logger or _logger
        self.libraries = libraries or LibraryManager(logger=self.logger)
        self.templates = templates or TemplateEngine(logger=self.logger)
        self.context_factory: ContextFactory = context_factory or SubprocessContextFactory(
            logger=self.logger
        )
        self.timeout_ms = timeout_ms
        self.on_message: MessageSink = on_message or (lambda _kind, _args: None)
        self.on_status: StatusSink = on_status or (lambda _status: None)
        self.secret_source = secret_source

        self.state = EngineState.IDLE
        self._secret: str | None = None
        self._kill_timer: asyncio.TimerHandle | None = None
        self._initialized = False
        self._context = self._create_context()

    @classmethod
    def from_config(
        cls,
        config: SandboxConfig,
        libraries: LibraryManager | None = None,
        on_message: MessageSink | None = None,
        on_status: StatusSink | None = None,
        logger: logging.Logger | None = None,
    ) -> "SandboxEngine":
        logger = logger or _logger
        return cls(
            libraries=libraries,
            templates=TemplateEngine(
                template_source=config.template_source,
                load_timeout_s=config.template_load_timeout_s,
                logger=logger,
            ),
            context_factory=SubprocessContextFactory(config.python_executable, logger=logger),
            timeout_ms=config.timeout_ms,
            on_message=on_message,
            on_status=on_status,
            logger=logger,
        )

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def current_secret(self) -> str | None:
        return self._secret

    def _create_context(self) -> ExecutionContext:
        context = self.context_factory.create()
        context.on_message(self._handle_message)
        self.logger.debug("Created execution context %s", context.context_id)
        return context

    async def initialize(self) -> None:
        self.logger.info("Initializing sandbox engine")
        await self.templates.initialize()
        self._initialized = True

    def validate_syntax(self, code: str) -> SyntaxCheck:
        """Parse and compile ``code`` without running it."""
        try:
            _ = compile(code, USER_CODE_FILENAME, "exec", dont_inherit=True)
        except SyntaxError as exc:
            return SyntaxCheck(
                valid=False,
                error=exc.msg,
                name=exc.__class__.__name__,
                lineno=exc.lineno,
            )
        except (ValueError, MemoryError, RecursionError, OverflowError) as exc:
            return SyntaxCheck(
                valid=False,
                error=str(exc) or "source is too deeply nested to compile",
                name=exc.__class__.__name__,
            )
        return SyntaxCheck(valid=True)

    async def execute(self, code: str) -> None:
        """Start a run. Results arrive through ``on_message`` and ``on_status``."""
        if not self._initialized:
            await self.initialize()

        previous = self.state
        self.state = EngineState.VALIDATING
        check = self.validate_syntax(code)
        if not check.valid:
            self.logger.debug("Syntax error detected: %s", check.describe())
            if previous is EngineState.EXECUTING:
                # the rejected code still supersedes the run in flight
                self.reset()
            self.state = EngineState.REJECTED
            self.on_message(MessageKind.ERROR.value, [check.describe()])
            self.on_status(EngineState.COMPLETED.value)
            return

        # a new secret supersedes whatever run is still draining
        secret = self._secret = self.secret_source()
        self._cancel_timer()

        bundle = await self.libraries.build_bundle()
        policy = self.libraries.build_policy()
        program = self.templates.render(code, secret, bundle, policy)

        context = self._context
        await context.send(program)
        if context is not self._context:
            # reset() ran while the program was being installed
            return

        self.state = EngineState.EXECUTING
        self.on_status(EngineState.EXECUTING.value)
        self._arm_timer()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._kill_timer = loop.call_later(self.timeout_ms / 1000, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

    def _on_timeout(self) -> None:
        self._kill_timer = None
        if self.state is not EngineState.EXECUTING:
            return
        error = TimeoutExceeded(self.timeout_ms)
        self.logger.warning("Run exceeded %dms; destroying context", self.timeout_ms)
        self.state = EngineState.TIMEOUT
        self.on_status(EngineState.TIMEOUT.value)
        self.on_message(MessageKind.ERROR.value, [str(error)])
        self.reset()

    def _handle_message(self, source: ExecutionContext, message: Message) -> None:
        if source is not self._context:
            self._drop(ProtocolViolation(f"message from inactive context {source.context_id}"))
            return
        if not is_authentic(message, self._secret):
            self._drop(ProtocolViolation("message failed secret check"))
            return

        if message.type == MessageKind.DONE.value:
            self._cancel_timer()
            if self.state is EngineState.EXECUTING:
                self.state = EngineState.COMPLETED
                self.on_status(EngineState.COMPLETED.value)
            return

        self.on_message(message.type, list(message.args))
        if message.type == MessageKind.ERROR.value:
            self.logger.warning("Sandbox error: %s", " ".join(message.args))

    def _drop(self, violation: ProtocolViolation) -> None:
        self.logger.debug("Dropped message: %s", violation.reason)

    def reset(self) -> None:
        """Kill the current context and replace it with a fresh one."""
        self._cancel_timer()
        self._context.destroy()
        self._context = self._create_context()
        self.state = EngineState.IDLE
        self.on_status("reset")

    def close(self) -> None:
        self._cancel_timer()
        self._context.destroy()
        self.state = EngineState.IDLE
        self.logger.debug("Sandbox engine closed")
