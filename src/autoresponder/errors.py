"""Error taxonomy and handshake error classification.

The handshake child reports failures as free text on its error stream
(``AUTH_ERROR: <CODE>: <detail>``). Classification happens here and only
here: each handshake step owns one ordered lookup table of
``(matched substring, kind, user-facing message)`` rows.
"""

import re
from dataclasses import dataclass
from enum import Enum

AUTH_ERROR_MARKER = "AUTH_ERROR:"


class AutoresponderError(Exception):
    """Base class for errors raised inside the auto-responder."""


class DeliveryError(AutoresponderError):
    """A message could not be delivered to a conversation."""

    def __init__(self, chat_id: int, reason: str):
        super().__init__(f"Cannot send message to {chat_id}: {reason}")
        self.chat_id = chat_id
        self.reason = reason


class RecipientUnknownError(DeliveryError):
    """The platform does not know the peer yet (no access hash cached)."""


class AuthErrorKind(str, Enum):
    FLOOD_LIMITED = "flood_limited"
    INVALID_CREDENTIAL = "invalid_credential"
    INVALID_PHONE_NUMBER = "invalid_phone_number"
    INVALID_CODE = "invalid_code"
    CODE_EXPIRED = "code_expired"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    INVALID_SECOND_FACTOR = "invalid_second_factor"
    DELIVERY_FAILED = "delivery_failed"
    PROCESS_TIMEOUT = "process_timeout"
    PROCESS_CRASHED = "process_crashed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorRule:
    """One row of a classification table."""
    needle: str
    kind: AuthErrorKind
    message: str
    needs_2fa: bool | None = None


@dataclass(frozen=True)
class ClassifiedError:
    kind: AuthErrorKind
    message: str
    needs_2fa: bool | None = None


FLOOD_MESSAGE = "Too many attempts. Please wait before trying again."

# Order matters: the first matching row wins.
SEND_CODE_RULES: tuple[ErrorRule, ...] = (
    ErrorRule("FLOOD", AuthErrorKind.FLOOD_LIMITED, FLOOD_MESSAGE),
    ErrorRule("PHONE_NUMBER_INVALID", AuthErrorKind.INVALID_PHONE_NUMBER,
              "Invalid phone number. Check the format."),
    ErrorRule("PHONE_CODE_EXPIRED", AuthErrorKind.CODE_EXPIRED,
              "Code expired. Request a new code."),
    ErrorRule("API_ID_INVALID", AuthErrorKind.INVALID_CREDENTIAL,
              "Invalid API ID. Please check your credentials."),
    ErrorRule("API_HASH_INVALID", AuthErrorKind.INVALID_CREDENTIAL,
              "Invalid API Hash. Please check your credentials."),
)

AUTH_RULES: tuple[ErrorRule, ...] = (
    ErrorRule("PASSWORD_HASH_INVALID", AuthErrorKind.INVALID_SECOND_FACTOR,
              "Invalid 2FA password", needs_2fa=True),
    ErrorRule("PHONE_CODE_INVALID", AuthErrorKind.INVALID_CODE,
              "Invalid code. Check and try again."),
    ErrorRule("PHONE_CODE_EXPIRED", AuthErrorKind.CODE_EXPIRED,
              "Code expired. Request a new code."),
    ErrorRule("FLOOD", AuthErrorKind.FLOOD_LIMITED, FLOOD_MESSAGE),
)

_FLOOD_SECONDS_RE = re.compile(r"FLOOD_WAIT_(\d+)")


def extract_error_text(line: str) -> str:
    """Return the text after the ``AUTH_ERROR:`` marker, stripped."""
    _, _, rest = line.partition(AUTH_ERROR_MARKER)
    return rest.strip()


def _classify(text: str, rules: tuple[ErrorRule, ...]) -> ClassifiedError:
    for rule in rules:
        if rule.needle in text:
            message = rule.message
            if rule.kind == AuthErrorKind.FLOOD_LIMITED:
                match = _FLOOD_SECONDS_RE.search(text)
                if match:
                    message = (
                        f"Too many attempts. Please wait {match.group(1)} "
                        "seconds before trying again."
                    )
            return ClassifiedError(rule.kind, message, rule.needs_2fa)

    return ClassifiedError(
        AuthErrorKind.UNKNOWN,
        extract_error_text(text) or text.strip() or "Authentication failed",
    )


def classify_send_code_error(text: str) -> ClassifiedError:
    """Classify an error reported while requesting the login code."""
    return _classify(text, SEND_CODE_RULES)


def classify_auth_error(text: str) -> ClassifiedError:
    """Classify an error reported while signing in with code/password."""
    return _classify(text, AUTH_RULES)


def classify_startup_error(text: str) -> ClassifiedError:
    """Classify an error raised by the interactive login or the listener."""
    return _classify(text, SEND_CODE_RULES + AUTH_RULES)
