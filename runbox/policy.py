"""
Policy string construction and the in-context guards that enforce it.

This module is imported by the bootstrap program inside the child
interpreter, so it must stay standard-library only.
"""

from __future__ import annotations

import builtins
from collections.abc import Callable, Iterable, Sequence
from types import ModuleType
from typing import cast
from urllib.parse import urlsplit

SANDBOX_FLAG = "__runbox_sandboxed__"

NETWORK_MODULES = [
    "socket",
    "_socket",
    "ssl",
    "_ssl",
    "http",
    "urllib",
    "urllib3",
    "requests",
    "httpx",
    "aiohttp",
    "ftplib",
    "smtplib",
    "poplib",
    "imaplib",
    "telnetlib",
    "xmlrpc",
    "socketserver",
    "subprocess",
    "ctypes",
    "importlib",
]

BLOCKED_BUILTINS = [
    "input",
    "breakpoint",
]

_ImportFn = Callable[
    [str, dict[str, object] | None, dict[str, object] | None, Sequence[str], int],
    ModuleType,
]


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def build_policy(origins: Iterable[str]) -> str:
    """Allow scripts from 'self' and every trusted origin, deny outbound network."""
    script_src = ["'self'"] + [f"https://{origin}" for origin in _unique(origins)]
    return (
        "default-src 'self'; "
        f"script-src {' '.join(script_src)}; "
        "connect-src 'none';"
    )


def parse_policy(text: str) -> dict[str, list[str]]:
    directives: dict[str, list[str]] = {}
    for chunk in text.split(";"):
        parts = chunk.split()
        if not parts:
            continue
        name = parts[0].lower()
        if name not in directives:
            directives[name] = parts[1:]
    return directives


def origin_allowed(policy: str | dict[str, list[str]], url: str) -> bool:
    """Whether the policy's script-src admits code served from ``url``."""
    directives = parse_policy(policy) if isinstance(policy, str) else policy
    sources = directives.get("script-src", directives.get("default-src", []))
    parts = urlsplit(url)
    if not parts.hostname:
        return False
    origin = f"{parts.scheme}://{parts.hostname}"
    return origin in sources


def network_denied(policy: str | dict[str, list[str]]) -> bool:
    directives = parse_policy(policy) if isinstance(policy, str) else policy
    return directives.get("connect-src") == ["'none'"]


def build_import_guard(
    blocked_modules: Iterable[str] | None = None,
    original_import: _ImportFn | None = None,
) -> _ImportFn:
    """
    Build a restricted __import__ hook that blocks network modules for
    imports issued from sandboxed namespaces. Imports made by the standard
    library on its own behalf are left alone.
    """
    blocked = set(blocked_modules or NETWORK_MODULES)
    delegate = original_import or cast(_ImportFn, builtins.__import__)

    def guarded_import(
        name: str,
        globals: dict[str, object] | None = None,
        locals: dict[str, object] | None = None,
        fromlist: Sequence[str] = (),
        level: int = 0,
    ) -> ModuleType:
        if globals is not None and globals.get(SANDBOX_FLAG) and level == 0:
            root = name.split(".")[0]
            if root in blocked or name in blocked:
                raise ImportError(f"Import of '{root}' blocked by sandbox policy")
        return delegate(name, globals, locals, fromlist, level)

    return guarded_import


def _deny_network(*_args: object, **_kwargs: object) -> None:
    raise PermissionError("Network access blocked by sandbox policy (connect-src 'none')")


def _patch_socket() -> None:
    import socket

    for name in ("connect", "connect_ex"):
        setattr(socket.socket, name, _deny_network)
    for name in ("create_connection", "getaddrinfo", "gethostbyname", "gethostbyname_ex"):
        setattr(socket, name, _deny_network)


def install_network_guard(policy: str) -> bool:
    """Install the import hook and socket patches when the policy denies network."""
    if not network_denied(policy):
        return False
    _patch_socket()
    builtins.__import__ = build_import_guard()
    return True


def disable_blocked_builtins(blocked_names: Iterable[str] | None = None) -> None:
    """Disable builtins that would block or escape the run (input, breakpoint)."""

    def _blocked(*_args: object, **_kwargs: object) -> None:
        raise RuntimeError("Blocked by sandbox policy")

    for name in blocked_names or BLOCKED_BUILTINS:
        if hasattr(builtins, name):
            setattr(builtins, name, _blocked)
