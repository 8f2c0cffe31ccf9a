import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional

PROG = "aws-helper"

DEFAULT_ALIAS_FILE = Path.home().joinpath(".aws").joinpath(f"{PROG}-aliases")
DEFAULT_CREDENTIALS_FILE = Path.home().joinpath(".aws").joinpath("credentials")
DEFAULT_TIMEOUT = 30
DEFAULT_SAML_TOOL = "saml2aws"

# Seconds. The provider accepts 900 to 129600 for session tokens.
DEFAULT_SESSION_TOKEN_DURATION = 43200
DEFAULT_ASSUME_ROLE_DURATION = 3600
DEFAULT_SAML_DURATION = 3600


@dataclass(frozen=True)
class Settings:
    alias_file: Path
    credentials_file: Path
    timeout: int
    saml_tool: str
    region: Optional[str] = None

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str], warn: Optional[Callable[[str], None]] = None
    ) -> "Settings":
        warnings: List[str] = []
        timeout = DEFAULT_TIMEOUT
        raw_timeout = environ.get("AWS_HELPER_TIMEOUT", "")
        if raw_timeout:
            if raw_timeout.isdigit() and int(raw_timeout) > 0:
                timeout = int(raw_timeout)
            else:
                warnings.append(f"Ignoring AWS_HELPER_TIMEOUT={raw_timeout!r}, using {DEFAULT_TIMEOUT} seconds")
        if warn:
            for warning in warnings:
                warn(warning)
        return cls(
            alias_file=Path(os.path.expanduser(environ.get("AWS_HELPER_ALIAS_FILE") or str(DEFAULT_ALIAS_FILE))),
            credentials_file=Path(
                os.path.expanduser(environ.get("AWS_SHARED_CREDENTIALS_FILE") or str(DEFAULT_CREDENTIALS_FILE))
            ),
            timeout=timeout,
            saml_tool=environ.get("AWS_HELPER_SAML_TOOL") or DEFAULT_SAML_TOOL,
            region=environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION") or None,
        )
