import re
import threading
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union

from botocore.utils import parse_timestamp

ROLE_ARN_PATTERN = re.compile(r"^arn:[\w-]+:iam::(?P<account>\d+):role/(?P<name>[\w+=,.@/-]+)$")


class Layer(Enum):
    UNAUTHENTICATED = "unauthenticated"
    BASE_VALIDATED = "base-validated"
    SESSION_TOKEN = "session-token"
    ROLE_ASSUMED = "role-assumed"


@dataclass(frozen=True)
class Profile:
    name: str

    def __str__(self) -> str:
        return f"profile '{self.name}'"


@dataclass(frozen=True)
class StaticKeys:
    access_key_id: str
    secret_access_key: str

    def __str__(self) -> str:
        return f"access key {self.access_key_id}"


IdentitySource = Optional[Union[Profile, StaticKeys]]


@dataclass(frozen=True)
class SlotState:
    identity_source: IdentitySource = None
    layer: Layer = Layer.UNAUTHENTICATED
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    account_id: Optional[str] = None
    caller_arn: Optional[str] = None
    user_id: Optional[str] = None
    session_expiry: Optional[datetime] = None
    mfa_expiry: Optional[datetime] = None
    assumed_role_arn: Optional[str] = None
    federated_role_arn: Optional[str] = None

    @property
    def has_secrets(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.session_token)

    @property
    def profile(self) -> Optional[str]:
        if isinstance(self.identity_source, Profile):
            return self.identity_source.name
        return None

    def check(self) -> None:
        """Raises ValueError when the state breaks one of the slot invariants."""
        secrets = [self.access_key_id, self.secret_access_key, self.session_token]
        if any(secrets) and not all(secrets):
            raise ValueError("Credential triple must be either complete or absent")
        if self.layer in (Layer.SESSION_TOKEN, Layer.ROLE_ASSUMED) and not self.has_secrets:
            raise ValueError(f"Layer {self.layer.value} requires temporary credentials")
        if self.layer == Layer.UNAUTHENTICATED and self.has_secrets:
            raise ValueError("Unauthenticated slot cannot hold temporary credentials")
        if self.layer == Layer.ROLE_ASSUMED:
            if not self.assumed_role_arn or not ROLE_ARN_PATTERN.match(self.assumed_role_arn):
                raise ValueError(f"Invalid assumed role ARN: {self.assumed_role_arn!r}")
        elif self.assumed_role_arn:
            raise ValueError("Assumed role ARN is only valid in the role-assumed layer")


_field_names = frozenset(field.name for field in fields(SlotState))


class CredentialSlot:
    """The session state of the calling shell.

    Only the transition engine writes to it, and only through ``apply`` and
    ``reset``. A patch is validated as a whole before anything is written.
    """

    def __init__(self, state: Optional[SlotState] = None) -> None:
        self._lock = threading.Lock()
        initial = state or SlotState()
        initial.check()
        self._state = initial

    def current_layer(self) -> Layer:
        return self._state.layer

    def snapshot(self) -> SlotState:
        with self._lock:
            return self._state

    def apply(self, **patch: Any) -> SlotState:
        unknown = set(patch) - _field_names
        if unknown:
            raise ValueError(f"Unknown slot fields: {', '.join(sorted(unknown))}")
        with self._lock:
            candidate = replace(self._state, **patch)
            candidate.check()
            self._state = candidate
            return candidate

    def reset(self) -> SlotState:
        with self._lock:
            self._state = SlotState()
            return self._state


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except (ValueError, TypeError, RuntimeError):
        return None


def from_environ(environ: Mapping[str, str]) -> SlotState:
    """Rebuilds the slot from the variables a previous invocation exported."""
    access_key_id = environ.get("AWS_ACCESS_KEY_ID") or None
    secret_access_key = environ.get("AWS_SECRET_ACCESS_KEY") or None
    session_token = environ.get("AWS_SESSION_TOKEN") or None
    profile = environ.get("AWS_PROFILE") or None
    role_arn = environ.get("AWS_ROLE") or None
    account_id = environ.get("AWS_HELPER_ACCOUNT_ID") or None

    identity: IdentitySource = None
    if access_key_id and secret_access_key and not session_token:
        identity = StaticKeys(access_key_id, secret_access_key)
        access_key_id = secret_access_key = None
    elif profile:
        identity = Profile(profile)
    if not (access_key_id and secret_access_key and session_token):
        access_key_id = secret_access_key = session_token = None

    if access_key_id:
        if role_arn and ROLE_ARN_PATTERN.match(role_arn):
            layer = Layer.ROLE_ASSUMED
        else:
            layer = Layer.SESSION_TOKEN
    elif identity and account_id:
        layer = Layer.BASE_VALIDATED
    else:
        layer = Layer.UNAUTHENTICATED

    state = SlotState(
        identity_source=identity,
        layer=layer,
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        session_token=session_token,
        account_id=account_id,
        caller_arn=environ.get("AWS_HELPER_CALLER_ARN") or None,
        user_id=environ.get("AWS_HELPER_USER_ID") or None,
        session_expiry=parse_expiry(environ.get("AWS_SESSION_EXPIRY")),
        mfa_expiry=parse_expiry(environ.get("AWS_MFA_EXPIRY")),
        assumed_role_arn=role_arn if layer == Layer.ROLE_ASSUMED else None,
        federated_role_arn=environ.get("AWS_HELPER_FEDERATED_ROLE") or None,
    )
    state.check()
    return state
