"""Client configuration: layered YAML, env interpolation, and redaction.

Provides:
- Built-in defaults deep-merged with .vault.config.yaml
- {env:VAR} interpolation with allowlist enforcement
- VAULT_BASE_URL / VAULT_API_KEY environment overrides
- Redaction for safe logging (never leak the API key)

Example .vault.config.yaml:

    vault:
      base_url: http://vault.local:8000
      api_key: "{env:VAULT_API_KEY}"
      read_timeout_ms: 120000
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("vault.config_loader")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG_FILE = ".vault.config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "vault": {
        "base_url": "http://localhost:8000",
        "api_key": None,
        "connect_timeout_ms": 5000,
        # Matches the dashboard proxy's 5 minute ceiling for a generation
        "read_timeout_ms": 300000,
        "max_connections": 20,
        "default_model": "qwen2.5-32b-awq",
    },
}

# Env var -> config key under "vault"
_ENV_OVERRIDES = {
    "VAULT_BASE_URL": "base_url",
    "VAULT_API_KEY": "api_key",
}

# Core allowlist for env var interpolation
_CORE_ENV_PATTERNS = [
    re.compile(r"^VAULT_"),
    re.compile(r"^OPENAI_API_KEY$"),
]

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(
    var_name: str, extra_patterns: List[re.Pattern] = ()
) -> bool:
    for pattern in _CORE_ENV_PATTERNS:
        if pattern.search(var_name):
            return True
    for pattern in extra_patterns:
        if pattern.search(var_name):
            return True
    return False


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str, extra_env_patterns: List[re.Pattern] = ()) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name, extra_env_patterns):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^VAULT_.*, ^OPENAI_API_KEY$"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any], extra_env_patterns: List[re.Pattern] = ()
) -> Dict[str, Any]:
    """Recursively interpolate all string values. Returns a new dict."""
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value, extra_env_patterns)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, extra_env_patterns)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load client config: defaults <- YAML file <- environment overrides.

    A missing file is not an error (defaults apply). A file that is not a
    YAML mapping, or whose vault section is not one, raises ValueError.
    """
    config_path = Path(path or os.environ.get("VAULT_CONFIG", DEFAULT_CONFIG_FILE))
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path.is_file():
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(
                f"Config file must be a YAML mapping, got {type(file_config).__name__}"
            )
        config = deep_merge(config, interpolate_config(file_config))
        logger.debug("Loaded %s: %s", config_path, redact_config(file_config))
    elif path:
        logger.warning("Config file not found: %s (using defaults)", config_path)

    if not isinstance(config.get("vault"), dict):
        raise ValueError(
            f"vault section must be a mapping, got {type(config.get('vault')).__name__}"
        )

    for env_var, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config["vault"][key] = value

    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging.

    Values sourced from {env:} show '***REDACTED***'.
    Keys matching sensitive patterns are also redacted.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = ", ".join(f"env:{ref}" for ref in _INTERP_RE.findall(value))
            result[key] = f"{REDACTED} (from {sources})"
        elif _SENSITIVE_KEY_RE.search(key) and value is not None:
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
