"""
Error taxonomy and classification.

Internal code raises typed errors (or plain exceptions from libraries and
subprocesses). The CLI calls :func:`classify_error` right before printing
so every failure reaches the user with a category, a plain message and a
list of remediation suggestions.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Category of error for reporting."""

    DOCKER = "DOCKER"
    RPC = "RPC"
    PORT = "PORT"
    NETWORK = "NETWORK"
    CONFIG = "CONFIG"
    FILESYSTEM = "FILESYSTEM"
    PLATFORM = "PLATFORM"
    WALLET = "WALLET"
    TRANSACTION = "TRANSACTION"
    SNAPSHOT = "SNAPSHOT"
    SCRIPT = "SCRIPT"
    UNKNOWN = "UNKNOWN"


CATEGORY_LABELS: dict[ErrorCategory, str] = {
    ErrorCategory.DOCKER: "Docker Error",
    ErrorCategory.RPC: "RPC Connection Error",
    ErrorCategory.PORT: "Port Conflict",
    ErrorCategory.NETWORK: "Network Error",
    ErrorCategory.CONFIG: "Configuration Error",
    ErrorCategory.FILESYSTEM: "File System Error",
    ErrorCategory.PLATFORM: "Platform Mismatch",
    ErrorCategory.WALLET: "Wallet Error",
    ErrorCategory.TRANSACTION: "Transaction Error",
    ErrorCategory.SNAPSHOT: "Archive Error",
    ErrorCategory.SCRIPT: "Script Error",
    ErrorCategory.UNKNOWN: "Unexpected Error",
}


class RegtestEnvError(Exception):
    """Base class for all classified errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        user_message: str,
        *,
        category: ErrorCategory | None = None,
        suggestions: list[str] | None = None,
        raw_error: BaseException | str | None = None,
        command: str | None = None,
        exit_code: int = 1,
    ):
        super().__init__(user_message)
        if category is not None:
            self.category = category
        self.user_message = user_message
        self.suggestions = list(suggestions or [])
        self.raw_error = raw_error
        self.command = command
        self.exit_code = exit_code

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self.category]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured output."""
        return {
            "category": self.category.value,
            "label": self.label,
            "message": self.user_message,
            "suggestions": self.suggestions,
            "raw_error": str(self.raw_error) if self.raw_error is not None else None,
            "command": self.command,
        }


class ArchiveError(RegtestEnvError):
    """Archive unreadable, manifest missing, payload absent."""

    category = ErrorCategory.SNAPSHOT


class ConfigError(RegtestEnvError):
    """Configuration missing, invalid, or destination undeterminable."""

    category = ErrorCategory.CONFIG


class ProfileError(RegtestEnvError):
    """Profile registry violations (unknown id, manual singleton)."""

    category = ErrorCategory.CONFIG


class LegacyLayoutDeclined(ProfileError):
    """The user declined to wipe a legacy data layout."""


class PortConflictError(RegtestEnvError):
    """No free port found within the scan bound."""

    category = ErrorCategory.PORT


class ContainerError(RegtestEnvError):
    """A container lifecycle stage failed."""

    category = ErrorCategory.DOCKER

    def __init__(self, user_message: str, *, logs: str = "", **kwargs: Any):
        super().__init__(user_message, **kwargs)
        self.logs = logs


class RpcError(RegtestEnvError):
    """A node RPC call failed or returned an error object."""

    category = ErrorCategory.RPC

    def __init__(
        self,
        user_message: str,
        *,
        method: str | None = None,
        code: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(user_message, **kwargs)
        self.method = method
        self.code = code


class ScriptError(RegtestEnvError):
    """A replay script could not be decoded."""

    category = ErrorCategory.SCRIPT


# Ordered classification rules: first match wins.
# Each rule: (category, needles, message template, suggestions)
_RULES: list[tuple[ErrorCategory, tuple[str, ...], str, list[str]]] = [
    (
        ErrorCategory.PORT,
        ("address already in use", "port is already allocated"),
        "Port {port} is already in use by another process.",
        [
            "Change the port in the profile configuration",
            "Check what's using it: lsof -i :{port}",
            "Stop the process holding the port and retry",
        ],
    ),
    (
        ErrorCategory.DOCKER,
        ("docker: command not found", "docker is not installed"),
        "Docker is not installed on this system.",
        [
            "Install Docker: https://docs.docker.com/get-docker/",
            "After installing, restart your terminal",
            "Or use a manual-mode profile with an existing bitcoind",
        ],
    ),
    (
        ErrorCategory.DOCKER,
        (
            "cannot connect to the docker daemon",
            "is the docker daemon running",
            "docker daemon is not running",
        ),
        "Docker daemon is not running.",
        [
            "Start Docker Desktop, or run: sudo systemctl start docker",
            "Wait a few seconds after starting, then try again",
        ],
    ),
    (
        ErrorCategory.DOCKER,
        ("is already in use by container", "conflict. the container name"),
        "A container with that name already exists.",
        [
            "Remove it: docker rm -f <name>",
            "Use a different container name in the profile configuration",
        ],
    ),
    (
        ErrorCategory.DOCKER,
        ("pull access denied", "manifest unknown", "repository does not exist"),
        "Failed to pull the Docker image.",
        [
            "Check your internet connection",
            "Verify the image name in your config",
            "Try: docker pull bitcoin/bitcoin:27.0",
        ],
    ),
    (
        ErrorCategory.PLATFORM,
        ("exec format error", "rosetta", "requested image's platform"),
        "Architecture mismatch between your system and the Docker image.",
        [
            "The image is amd64; Docker will use emulation (slower but works)",
            "Or use a native arm64 Bitcoin Core image",
        ],
    ),
    (
        ErrorCategory.RPC,
        ("econnrefused", "connection refused", "connecterror"),
        "Cannot connect to Bitcoin Core at {url}.",
        [
            "Is Bitcoin Core running? Check: bitcoin-cli -regtest getblockchaininfo",
            "If using Docker: docker ps",
            "Default regtest RPC port is 18443",
        ],
    ),
    (
        ErrorCategory.RPC,
        ("401", "authentication failed", "incorrect rpcuser or rpcpassword"),
        "RPC authentication failed: wrong username or password.",
        [
            "Check rpcUser/rpcPassword in the profile configuration",
            "Verify bitcoin.conf has matching rpcuser/rpcpassword",
        ],
    ),
    (
        ErrorCategory.RPC,
        ("502", "bad gateway"),
        "Proxy cannot reach Bitcoin Core (502 Bad Gateway).",
        [
            "Ensure all containers are running: docker ps",
            "Check proxy logs: docker logs <container>-nginx",
        ],
    ),
    (
        ErrorCategory.RPC,
        ("timeout", "timed out", "etimedout"),
        "Connection to Bitcoin Core timed out.",
        [
            "Bitcoin Core might be busy (reindex, initial load)",
            "Try again in a few seconds",
        ],
    ),
    (
        ErrorCategory.NETWORK,
        ("name or service not known", "network is unreachable", "no route to host"),
        "Network error while contacting a remote host.",
        ["Check your network connection and host configuration"],
    ),
    (
        ErrorCategory.WALLET,
        ("wallet already exists", "already loaded"),
        "A wallet with that name already exists or is loaded.",
        [
            "Choose a different wallet name",
            "Or unload the existing wallet first",
        ],
    ),
    (
        ErrorCategory.WALLET,
        ("wallet not found", "requested wallet does not exist"),
        "Wallet not found.",
        [
            "Wallet names are case-sensitive",
            "The wallet may need to be loaded first",
        ],
    ),
    (
        ErrorCategory.FILESYSTEM,
        ("eacces", "permission denied", "eperm", "operation not permitted"),
        "Permission denied: cannot access a file or directory.",
        [
            "Check ownership of the data directory",
            "If using Docker volumes, check Docker file sharing settings",
        ],
    ),
    (
        ErrorCategory.FILESYSTEM,
        ("enoent", "no such file"),
        "File or directory not found.",
        ["Check the configured paths in the active profile"],
    ),
    (
        ErrorCategory.CONFIG,
        ("unexpected token", "json parse", "not valid json", "jsondecodeerror", "validation error"),
        "Configuration file is corrupted or invalid.",
        [
            "Fix the file manually, or delete the profile and recreate it",
        ],
    ),
    (
        ErrorCategory.TRANSACTION,
        ("insufficient funds", "fee exceeds"),
        "Insufficient funds for this transaction.",
        [
            "Mine more blocks to get coinbase rewards",
            "Coinbase rewards need 100 confirmations to be spendable",
        ],
    ),
]

_UNKNOWN_SUGGESTIONS = [
    "Run with --verbose for full error details",
    "Check the profile log directory for details",
]


def classify_error(error: BaseException | str, command: str | None = None) -> RegtestEnvError:
    """
    Turn any raw error into a classified :class:`RegtestEnvError`.

    Already-classified errors pass through unchanged. Otherwise the message
    and any ``stderr`` attribute are pattern-matched against the rule table.

    Args:
        error: Exception or raw error text.
        command: Command that produced the error, if known.

    Returns:
        Classified error.
    """
    if isinstance(error, RegtestEnvError):
        return error

    msg = str(error)
    stderr = getattr(error, "stderr", "") or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    combined = f"{type(error).__name__} {msg} {stderr}".lower()
    cmd = command or _command_of(error)

    for category, needles, template, suggestions in _RULES:
        if any(needle in combined for needle in needles):
            port = _extract_port(f"{msg} {stderr}")
            url = _extract_url(msg)
            return RegtestEnvError(
                template.format(port=port, url=url),
                category=category,
                suggestions=[s.format(port=port) for s in suggestions],
                raw_error=error,
                command=cmd,
            )

    text = msg if len(msg) <= 200 else msg[:200] + "..."
    return RegtestEnvError(
        text or type(error).__name__,
        category=ErrorCategory.UNKNOWN,
        suggestions=list(_UNKNOWN_SUGGESTIONS),
        raw_error=error,
        command=cmd,
    )


def _extract_port(text: str) -> str:
    match = re.search(r"(?::(\d{4,5}))|(?:port\s+(\d{4,5}))", text, re.IGNORECASE)
    if not match:
        return "unknown"
    return match.group(1) or match.group(2)


def _extract_url(text: str) -> str:
    match = re.search(r"(https?://[^\s'\"]+)", text)
    return match.group(1) if match else "the configured endpoint"


def _command_of(error: BaseException | str) -> str | None:
    cmd = getattr(error, "cmd", None)
    if cmd is None:
        return None
    if isinstance(cmd, (list, tuple)):
        return " ".join(str(part) for part in cmd)
    return str(cmd)
