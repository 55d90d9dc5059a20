"""Regex-based secret redaction for logs and RPC output.

Masks model API keys, channel bot tokens and gateway credentials before
they reach log files, ``config.get`` responses or CLI output.

Short tokens (< 18 chars) are fully masked. Longer tokens preserve
the first 6 and last 4 characters for debuggability.
"""

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Known API key prefixes -- match the prefix + contiguous token chars
_PREFIX_PATTERNS = [
    r"sk-[A-Za-z0-9_-]{10,}",           # OpenAI / OpenRouter
    r"xox[baprs]-[A-Za-z0-9-]{10,}",    # Slack bot / user tokens
    r"xapp-[A-Za-z0-9-]{10,}",          # Slack app-level tokens
]

# ENV assignment patterns: KEY=value where KEY contains a secret-like name
_SECRET_ENV_NAMES = r"(?:API_?KEY|TOKEN|SECRET|PASSWORD|PASSWD|CREDENTIAL|AUTH)"
_ENV_ASSIGN_RE = re.compile(
    rf"([A-Z_]*{_SECRET_ENV_NAMES}[A-Z_]*)\s*=\s*(['\"]?)(\S+)\2",
    re.IGNORECASE,
)

# JSON field patterns: "apiKey", "botToken", "appToken", "password", etc.
_JSON_KEY_NAMES = r"(?:[A-Za-z_]*(?:api_?key|token|secret|password)|bearer)"
_JSON_FIELD_RE = re.compile(
    rf'("{_JSON_KEY_NAMES}")\s*:\s*"([^"]+)"',
    re.IGNORECASE,
)

# Authorization headers
_AUTH_HEADER_RE = re.compile(
    r"(Authorization:\s*Bearer\s+)(\S+)",
    re.IGNORECASE,
)

# Telegram bot tokens: bot<digits>:<token> or <digits>:<alphanum>
_TELEGRAM_RE = re.compile(
    r"(bot)?(\d{8,}):([-A-Za-z0-9_]{30,})",
)

# Discord bot tokens: <base64 user id>.<timestamp>.<hmac>
_DISCORD_RE = re.compile(
    r"(?<![A-Za-z0-9_.-])([MNO][A-Za-z0-9_-]{23,27})\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27,}",
)

# Compile known prefix patterns into one alternation
_PREFIX_RE = re.compile(
    r"(?<![A-Za-z0-9_-])(" + "|".join(_PREFIX_PATTERNS) + r")(?![A-Za-z0-9_-])"
)


def _mask_token(token: str) -> str:
    """Mask a token, preserving prefix for long tokens."""
    if len(token) < 18:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


def redact_sensitive_text(text: str) -> str:
    """Apply all redaction patterns to a block of text.

    Safe to call on any string -- non-matching text passes through unchanged.
    """
    if not text:
        return text

    # Known prefixes (sk-, xoxb-, etc.)
    text = _PREFIX_RE.sub(lambda m: _mask_token(m.group(1)), text)

    # ENV assignments: OPENAI_API_KEY=sk-abc...
    def _redact_env(m):
        name, quote, value = m.group(1), m.group(2), m.group(3)
        return f"{name}={quote}{_mask_token(value)}{quote}"
    text = _ENV_ASSIGN_RE.sub(_redact_env, text)

    # JSON fields: "apiKey": "value"
    def _redact_json(m):
        key, value = m.group(1), m.group(2)
        return f'{key}: "{_mask_token(value)}"'
    text = _JSON_FIELD_RE.sub(_redact_json, text)

    # Authorization headers
    text = _AUTH_HEADER_RE.sub(
        lambda m: m.group(1) + _mask_token(m.group(2)),
        text,
    )

    # Telegram bot tokens
    def _redact_telegram(m):
        prefix = m.group(1) or ""
        digits = m.group(2)
        return f"{prefix}{digits}:***"
    text = _TELEGRAM_RE.sub(_redact_telegram, text)

    # Discord bot tokens keep only the id segment
    text = _DISCORD_RE.sub(lambda m: f"{m.group(1)}.***", text)

    return text


class RedactingFormatter(logging.Formatter):
    """Log formatter that redacts secrets from all log messages."""

    def __init__(self, fmt=None, datefmt=None, style='%', **kwargs):
        super().__init__(fmt, datefmt, style, **kwargs)

    def format(self, record: logging.LogRecord) -> str:
        original = super().format(record)
        return redact_sensitive_text(original)


# Config keys whose values are credentials, compared case-insensitively
_SECRET_CONFIG_KEYS = {
    "token",
    "bottoken",
    "apptoken",
    "signingsecret",
    "apikey",
    "password",
    "secret",
    "webhooksecret",
}


def _is_secret_key(key: str) -> bool:
    lowered = key.lower().replace("_", "")
    return lowered in _SECRET_CONFIG_KEYS or lowered.endswith("token") or lowered.endswith("apikey")


def redact_mapping(value: Any) -> Any:
    """Return a copy of a config tree with credential values masked.

    Keys like ``botToken`` or ``apiKey`` are masked wherever they appear;
    file references (``tokenFile``) are paths, not secrets, and are kept.
    """
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if isinstance(key, str) and _is_secret_key(key) and isinstance(item, str) and item:
                result[key] = _mask_token(item)
            else:
                result[key] = redact_mapping(item)
        return result
    if isinstance(value, list):
        return [redact_mapping(item) for item in value]
    return value
