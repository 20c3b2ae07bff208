# herald/core/credential_guard.py
"""
Credential Guard

Pre-flight check run before any resolution work: a channel with missing
connection settings fails here, before targets or attachments are touched.
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional

from herald.core.errors import ConfigurationError
from herald.core.models import SmtpCredentials

logger = logging.getLogger(__name__)

REQUIRED_SMTP_FIELDS = ('host', 'port', 'username', 'password', 'fromEmail')

# snake_case spellings accepted for the camelCase keys
_ALIASES = {'fromEmail': 'from_email', 'fromName': 'from_name'}


def _lookup(credentials: Mapping[str, Any], key: str) -> Any:
    value = credentials.get(key)
    if value is None and key in _ALIASES:
        value = credentials.get(_ALIASES[key])
    return value


class CredentialGuard:
    """
    Validate SMTP connection settings.

    Args:
        required: Keys that must be present and non-empty
    """

    def __init__(self, required: Iterable[str] = REQUIRED_SMTP_FIELDS):
        self.required = tuple(required)

    def missing_fields(self, credentials: Optional[Mapping[str, Any]]) -> List[str]:
        if not credentials:
            return list(self.required)
        missing = []
        for key in self.required:
            value = _lookup(credentials, key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)
        return missing

    def check(self, credentials: Optional[Mapping[str, Any]]) -> SmtpCredentials:
        """
        Fail fast on incomplete settings.

        Returns:
            The validated credentials

        Raises:
            ConfigurationError: when a mandatory field is absent or the port is invalid
        """
        missing = self.missing_fields(credentials)
        if missing:
            logger.error(f"SMTP configuration incomplete, missing: {', '.join(missing)}")
            raise ConfigurationError(
                f"SMTP configuration incomplete. Missing: {', '.join(missing)}",
                missing=missing,
            )

        try:
            port = int(_lookup(credentials, 'port'))
        except (TypeError, ValueError):
            port = 0
        if not 1 <= port <= 65535:
            logger.error(f"Invalid SMTP port: {_lookup(credentials, 'port')!r}")
            raise ConfigurationError(f"Invalid SMTP port: {_lookup(credentials, 'port')!r}")

        return SmtpCredentials.from_mapping({**credentials, 'port': port})
