"""
Runbox

Isolated execution engine for untrusted Python code.

This package provides:
- Subprocess-backed execution contexts with hard timeout enforcement
- A bootstrap program that intercepts output and reports completion
- Secret-authenticated messages between the engine and each run
- An allowlist of trusted origins for injectable third-party modules

WARNING: Isolation relies on the child interpreter being a separate process.
Network denial inside the child is best-effort (import guard plus socket
patching); there is no CPU/memory metering or syscall filtering.
"""

__version__ = "0.1.0"
