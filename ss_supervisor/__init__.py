"""
Supervisor package for running a Shadowsocks server process.

This package exposes typed helpers for writing the server's key configuration,
launching and restarting the server binary, and a small FastAPI control surface
that key-management tooling can push access keys through.
"""

from __future__ import annotations

__all__ = [
    "api",
    "ciphers",
    "config",
    "config_file",
    "keysource",
    "launcher",
    "probe",
    "restart",
    "server",
    "supervisor",
    "types",
]
