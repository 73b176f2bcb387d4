"""Bootstrap program templating for execution contexts."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping

from runbox.errors import FetchFailure, TemplateIntegrityError
from runbox.net import FetchFn, fetch_text

TEMPLATE_LOAD_TIMEOUT_S = 5.0

SECRET_MARKER = "{{SECRET}}"
USER_CODE_MARKER = "{{USER_CODE}}"
POLICY_MARKER = "{{POLICY}}"
LIBRARY_BUNDLE_MARKER = "{{LIBRARY_BUNDLE}}"

REQUIRED_MARKERS = (
    SECRET_MARKER,
    USER_CODE_MARKER,
    POLICY_MARKER,
    LIBRARY_BUNDLE_MARKER,
)

USER_CODE_FILENAME = "<user-code>"
SOURCE_ANNOTATION = "#@ sourceURL="

DEFAULT_POLICY = "default-src 'self'; script-src 'self'; connect-src 'none';"

_MARKER_PATTERN = re.compile("|".join(re.escape(marker) for marker in REQUIRED_MARKERS))

FALLBACK_TEMPLATE = r'''# runbox bootstrap program
import asyncio
import builtins
import io
import json
import logging
import sys
import threading
import traceback
import types
import warnings

from runbox import policy as _policy

SECRET = "{{SECRET}}"
POLICY = "{{POLICY}}"
USER_SOURCE = """{{USER_CODE}}"""

_channel = sys.stdout
_channel_lock = threading.Lock()
_exec = builtins.exec
_compile = builtins.compile
_trace_files = set()


def _format_exception(exc):
    text = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, SyntaxError) and exc.filename in _trace_files and exc.lineno:
        text += f"\n    at line {exc.lineno}, column {exc.offset or 0}"
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename in _trace_files:
            text += f"\n    at {frame.name} (line {frame.lineno})"
    return text


def _stringify(value):
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, int, float)):
        return str(value)
    if isinstance(value, BaseException):
        return _format_exception(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        pass
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)


def _send(kind, *args):
    payload = {
        "__sandbox": True,
        "secret": SECRET,
        "type": kind,
        "args": [_stringify(arg) for arg in args],
    }
    line = json.dumps(payload)
    with _channel_lock:
        try:
            _channel.write(line + "\n")
            _channel.flush()
        except (OSError, ValueError):
            # engine side is gone; nothing left to report to
            pass


class _Console:
    def log(self, *args):
        _send("log", *args)

    def info(self, *args):
        _send("info", *args)

    def warn(self, *args):
        _send("warn", *args)

    warning = warn

    def error(self, *args):
        _send("error", *args)


console = _Console()


class _StreamForwarder(io.TextIOBase):
    def __init__(self, kind):
        super().__init__()
        self._kind = kind
        self._buffer = ""

    def writable(self):
        return True

    def write(self, text):
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            _send(self._kind, line)
        return len(text)

    def flush(self):
        if self._buffer:
            pending, self._buffer = self._buffer, ""
            _send(self._kind, pending)


class _LogBridge(logging.Handler):
    def emit(self, record):
        if record.levelno >= logging.ERROR:
            kind = "error"
        elif record.levelno >= logging.WARNING:
            kind = "warn"
        else:
            kind = "info"
        _send(kind, self.format(record))


sys.stdout = _StreamForwarder("log")
sys.stderr = _StreamForwarder("error")
_bridge = _LogBridge()
_bridge.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
logging.getLogger().handlers[:] = [_bridge]


def _excepthook(exc_type, exc, tb):
    _send("error", exc if exc is not None else exc_type.__name__)


def _thread_excepthook(args):
    if args.exc_type is SystemExit:
        return
    name = args.thread.name if args.thread is not None else "unknown"
    _send("error", f"Exception in thread {name}: " + _format_exception(args.exc_value))


def _unraisablehook(unraisable):
    message = unraisable.err_msg or "Exception ignored"
    if unraisable.exc_value is not None:
        message += ": " + _format_exception(unraisable.exc_value)
    _send("error", message)


def _loop_exception_handler(loop, context):
    exc = context.get("exception")
    detail = _format_exception(exc) if exc is not None else context.get("message", "unknown")
    _send("error", "Unhandled rejection: " + detail)


def _showwarning(message, category, filename, lineno, file=None, line=None):
    _send("warn", f"{category.__name__}: {message}")


sys.excepthook = _excepthook
threading.excepthook = _thread_excepthook
sys.unraisablehook = _unraisablehook
warnings.showwarning = _showwarning

with warnings.catch_warnings():
    warnings.simplefilter("ignore", DeprecationWarning)

    class _EventLoopPolicy(asyncio.DefaultEventLoopPolicy):
        def new_event_loop(self):
            loop = super().new_event_loop()
            loop.set_exception_handler(_loop_exception_handler)
            return loop

    asyncio.set_event_loop_policy(_EventLoopPolicy())

_policy.disable_blocked_builtins()
_policy.install_network_guard(POLICY)

_USER_NAMESPACE = {
    "__name__": "__main__",
    "__builtins__": builtins,
    "console": console,
    _policy.SANDBOX_FLAG: True,
}


def __runbox_load_library__(name, module_name, url, source):
    if not _policy.origin_allowed(POLICY, url):
        _send("error", f"Refused to load library {name} from {url}: origin not allowed by policy")
        return
    filename = f"<library:{name}>"
    _trace_files.add(filename)
    module = types.ModuleType(module_name)
    module.__dict__[_policy.SANDBOX_FLAG] = True
    try:
        _exec(_compile(source, filename, "exec", dont_inherit=True), module.__dict__)
    except Exception as exc:
        _send("error", f"Library {name} failed to load: " + _format_exception(exc))
        return
    sys.modules[module_name] = module
    _USER_NAMESPACE[module_name] = module


{{LIBRARY_BUNDLE}}


def _run_user_code():
    header, _, body = USER_SOURCE.partition("\n")
    filename = "<user-code>"
    if header.startswith("#@ sourceURL="):
        filename = header[len("#@ sourceURL="):].strip() or filename
    else:
        body = USER_SOURCE
    _trace_files.add(filename)
    try:
        _exec(_compile(body, filename, "exec", dont_inherit=True), _USER_NAMESPACE)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            _send("error", f"SystemExit: {exc.code}")
    except BaseException as exc:
        _send("error", exc)
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        _send("done")


_run_user_code()
'''


def escape_user_code(code: str) -> str:
    """Escape code so it cannot terminate the string literal that holds it."""
    return (
        code.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("'", "\\'")
        .replace("\x00", "\\x00")
        .replace("\r", "\\r")
    )


def substitute_markers(template: str, values: Mapping[str, str]) -> str:
    """Replace every marker occurrence in one pass; inserted values are never re-scanned."""
    return _MARKER_PATTERN.sub(lambda match: values.get(match.group(0), match.group(0)), template)


class TemplateEngine:
    """
    Loads the bootstrap template and renders a program per run.

    Loading is bounded by ``load_timeout_s`` and never fails the caller: a
    missing, unreachable or incomplete template is replaced by the embedded
    FALLBACK_TEMPLATE.
    """

    template_source: str | None
    load_timeout_s: float
    template: str | None
    is_loaded: bool
    fetch_count: int

    def __init__(
        self,
        template_source: str | None = None,
        load_timeout_s: float = TEMPLATE_LOAD_TIMEOUT_S,
        fetch: FetchFn = fetch_text,
        logger: logging.Logger | None = None,
    ) -> None:
        self.template_source = template_source
        self.load_timeout_s = load_timeout_s
        self.fetch = fetch
        self.logger = logger or logging.getLogger(__name__)
        self.template = None
        self.is_loaded = False
        self.using_fallback = False
        self.fetch_count = 0

    def force_reload(self) -> None:
        self.logger.info("Force reloading template")
        self.template = None
        self.is_loaded = False

    async def initialize(self) -> None:
        if self.is_loaded:
            self.logger.debug("Template already loaded, skipping")
            return

        if self.template_source is None:
            self._use_fallback()
            return

        try:
            self.fetch_count += 1
            text = await asyncio.wait_for(
                asyncio.to_thread(self.fetch, self.template_source, self.load_timeout_s),
                timeout=self.load_timeout_s,
            )
            self.validate(text)
        except (FetchFailure, OSError, TimeoutError, asyncio.TimeoutError) as exc:
            self.logger.error("Failed to load sandbox template: %s", exc)
            self.logger.warning("Using fallback template")
            self._use_fallback()
            return
        except TemplateIntegrityError as exc:
            self.logger.warning("%s; using fallback template", exc)
            self._use_fallback()
            return

        self.template = text
        self.is_loaded = True
        self.using_fallback = False
        self.logger.info("Template loaded from %s (%d chars)", self.template_source, len(text))

    def _use_fallback(self) -> None:
        self.template = FALLBACK_TEMPLATE
        self.is_loaded = True
        self.using_fallback = True

    def validate(self, template: str) -> None:
        missing = [marker for marker in REQUIRED_MARKERS if marker not in template]
        if missing:
            raise TemplateIntegrityError(missing)

    def render(
        self,
        user_code: str,
        secret: str,
        library_bundle: str = "",
        policy: str | None = None,
    ) -> str:
        if not self.is_loaded or self.template is None:
            raise RuntimeError("TemplateEngine not initialized. Call initialize() first.")

        escaped = escape_user_code(user_code)
        annotated = f"{SOURCE_ANNOTATION}{USER_CODE_FILENAME}\n{escaped}"
        rendered = substitute_markers(
            self.template,
            {
                SECRET_MARKER: str(secret),
                USER_CODE_MARKER: annotated,
                POLICY_MARKER: policy or DEFAULT_POLICY,
                LIBRARY_BUNDLE_MARKER: library_bundle,
            },
        )
        self.logger.debug("Rendered bootstrap program (%d chars)", len(rendered))
        return rendered
