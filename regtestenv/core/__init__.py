"""Core utilities: config, errors, canonical JSON, logging."""

from regtestenv.core.config import (
    AppConfig,
    BitcoinRpcConfig,
    DockerConfig,
    SetupMode,
    SharedConfig,
    sanitize_config_for_export,
)
from regtestenv.core.errors import ErrorCategory, RegtestEnvError, classify_error
from regtestenv.core.json_canonical import canonical_json_dumps, canonical_json_loads

__all__ = [
    "AppConfig",
    "BitcoinRpcConfig",
    "DockerConfig",
    "SetupMode",
    "SharedConfig",
    "sanitize_config_for_export",
    "ErrorCategory",
    "RegtestEnvError",
    "classify_error",
    "canonical_json_dumps",
    "canonical_json_loads",
]
