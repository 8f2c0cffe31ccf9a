from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    MISSING_ARGUMENT = "MissingArgument"
    ROLE_UNRESOLVED = "RoleUnresolved"
    ALREADY_ELEVATED = "AlreadyElevated"
    NO_BASE_CREDENTIALS = "NoBaseCredentials"
    CREDENTIALS_INVALID = "CredentialsInvalid"
    MFA_FAILED = "MfaFailed"
    ASSUME_ROLE_FAILED = "AssumeRoleFailed"
    TOKEN_VEND_FAILED = "TokenVendFailed"
    SAML_LOGIN_FAILED = "SamlLoginFailed"
    SESSION_EXPIRED = "SessionExpired"
    NO_SESSION = "NoSession"
    TOOL_UNAVAILABLE = "ToolUnavailable"


class HelperError(Exception):
    """A subcommand that could not complete. The failed transition writes nothing to the slot."""

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class MissingArgument(HelperError):
    def __init__(self, name: str, detail: Optional[str] = None) -> None:
        super().__init__(ErrorKind.MISSING_ARGUMENT, detail or f"Missing value for {name}")
        self.name = name


class ProviderError(Exception):
    """Raised by an identity provider client when a call fails or times out."""
