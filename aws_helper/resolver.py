"""Subcommand argument resolution.

Tokens are classified left to right by an ordered list of matchers into
``Flag``, ``RoleArn``, ``AccountId`` or ``FreeToken``. A reducer per
subcommand folds the classified tokens into a request object. Later tokens of
the same shape overwrite earlier ones.
"""
import re
import shlex
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

from aws_helper.errors import ErrorKind, HelperError, MissingArgument

ARN_TOKEN_PATTERN = re.compile(r"^arn:aws:iam::\d+:role/[\w+=,.@/-]+$")
ROLE_NAME_PATTERN = re.compile(r"^[\w+=,.@/-]{1,64}$")
SESSION_NAME_LIMIT = 64
_session_name_invalid = re.compile(r"[^\w+=,.@-]")

VALUE_FLAGS = frozenset({"--duration", "--mfa", "--external-id", "--file"})
LITERAL_FLAGS = frozenset({"--silent"})
ASSUME_ROLE_FLAGS = frozenset({"--duration", "--mfa", "--external-id"})


@dataclass(frozen=True)
class Flag:
    name: str
    value: Optional[str] = None


@dataclass(frozen=True)
class RoleArn:
    arn: str


@dataclass(frozen=True)
class AccountId:
    account: str


@dataclass(frozen=True)
class FreeToken:
    value: str


Token = Union[Flag, RoleArn, AccountId, FreeToken]


def _match_flag(token: str, rest: List[str], value_flags: FrozenSet[str]) -> Optional[Tuple[Token, int]]:
    if token in LITERAL_FLAGS:
        return Flag(token), 1
    if token in value_flags:
        if not rest:
            raise MissingArgument(token, f"Flag {token} requires a value")
        return Flag(token, rest[0]), 2
    return None


def _match_arn(token: str, rest: List[str], value_flags: FrozenSet[str]) -> Optional[Tuple[Token, int]]:
    if ARN_TOKEN_PATTERN.match(token):
        return RoleArn(token), 1
    return None


def _match_account(token: str, rest: List[str], value_flags: FrozenSet[str]) -> Optional[Tuple[Token, int]]:
    if token.isdigit() and token.isascii():
        return AccountId(token), 1
    return None


def _match_free(token: str, rest: List[str], value_flags: FrozenSet[str]) -> Optional[Tuple[Token, int]]:
    return FreeToken(token), 1


_matchers: Sequence[Callable[[str, List[str], FrozenSet[str]], Optional[Tuple[Token, int]]]] = (
    _match_flag,
    _match_arn,
    _match_account,
    _match_free,
)


def classify(tokens: Sequence[str], value_flags: FrozenSet[str] = VALUE_FLAGS) -> Iterator[Token]:
    remaining = list(tokens)
    while remaining:
        token, rest = remaining[0], remaining[1:]
        for matcher in _matchers:
            matched = matcher(token, rest, value_flags)
            if matched is not None:
                classified, consumed = matched
                yield classified
                remaining = remaining[consumed:]
                break


def _duration(flag: Flag) -> int:
    value = flag.value or ""
    if not (value.isdigit() and value.isascii()):
        raise MissingArgument("--duration", f"Flag --duration requires a number of seconds, got {value!r}")
    return int(value)


@dataclass(frozen=True)
class SilentRequest:
    silent: bool = False


@dataclass(frozen=True)
class ProfileRequest:
    profile: Optional[str] = None


@dataclass(frozen=True)
class DurationRequest:
    duration: Optional[int] = None


@dataclass(frozen=True)
class MfaRequest:
    code: Optional[str] = None
    duration: Optional[int] = None


@dataclass(frozen=True)
class AssumeRoleRequest:
    role_arn: Optional[str] = None
    role_name: Optional[str] = None
    account_id: Optional[str] = None
    external_id: Optional[str] = None
    mfa_code: Optional[str] = None
    duration: Optional[int] = None


@dataclass(frozen=True)
class FileRequest:
    path: Optional[str] = None


def parse_silent(tokens: Sequence[str]) -> SilentRequest:
    silent = False
    for token in classify(tokens, frozenset()):
        if isinstance(token, Flag) and token.name == "--silent":
            silent = True
    return SilentRequest(silent)


def parse_profile(tokens: Sequence[str]) -> ProfileRequest:
    profile = None
    for token in classify(tokens, frozenset()):
        if isinstance(token, FreeToken):
            profile = token.value
        elif isinstance(token, AccountId):
            profile = token.account
    return ProfileRequest(profile)


def parse_duration(tokens: Sequence[str]) -> DurationRequest:
    duration = None
    for token in classify(tokens, frozenset({"--duration"})):
        if isinstance(token, Flag) and token.name == "--duration":
            duration = _duration(token)
    return DurationRequest(duration)


def parse_mfa(tokens: Sequence[str]) -> MfaRequest:
    code = None
    duration = None
    for token in classify(tokens, frozenset({"--duration"})):
        if isinstance(token, Flag) and token.name == "--duration":
            duration = _duration(token)
        elif isinstance(token, AccountId):
            code = token.account
        elif isinstance(token, FreeToken):
            code = token.value
    return MfaRequest(code, duration)


def parse_file(tokens: Sequence[str]) -> FileRequest:
    path = None
    for token in classify(tokens, frozenset({"--file"})):
        if isinstance(token, Flag) and token.name == "--file":
            path = token.value
    return FileRequest(path)


def parse_assume_role(tokens: Sequence[str]) -> AssumeRoleRequest:
    fields: Dict[str, Union[str, int, None]] = {}
    for token in classify(tokens, ASSUME_ROLE_FLAGS):
        if isinstance(token, Flag):
            if token.name == "--duration":
                fields["duration"] = _duration(token)
            elif token.name == "--mfa":
                fields["mfa_code"] = token.value
            elif token.name == "--external-id":
                fields["external_id"] = token.value
        elif isinstance(token, RoleArn):
            fields["role_arn"] = token.arn
        elif isinstance(token, AccountId):
            fields["account_id"] = token.account
        else:
            fields["role_name"] = token.value
    return AssumeRoleRequest(**fields)


def expand_alias(tokens: Sequence[str], lookup: Callable[[str], Optional[str]]) -> List[str]:
    """Replaces the whole argument list when the first token names an alias. Never recursive."""
    if not tokens:
        return []
    body = lookup(tokens[0])
    if body is None:
        return list(tokens)
    try:
        return shlex.split(body)
    except ValueError as error:
        raise HelperError(ErrorKind.ROLE_UNRESOLVED, f"Alias '{tokens[0]}' cannot be parsed: {error}") from error


def undeclared_flags(tokens: Sequence[str], value_flags: FrozenSet[str] = ASSUME_ROLE_FLAGS) -> List[str]:
    """Tokens that look like flags but are neither declared nor consumed as a flag value."""
    found = []
    for token in classify(tokens, value_flags):
        if isinstance(token, FreeToken) and token.value.startswith("--"):
            found.append(token.value)
    return found


def require_role(request: AssumeRoleRequest) -> None:
    """Checks what can be checked about the role without knowing the caller's account."""
    if request.role_arn:
        return
    if not request.role_name:
        raise HelperError(ErrorKind.ROLE_UNRESOLVED, "No role ARN, role name or alias given")
    if not ROLE_NAME_PATTERN.match(request.role_name):
        raise HelperError(ErrorKind.ROLE_UNRESOLVED, f"'{request.role_name}' is not a valid role name")


def role_arn(request: AssumeRoleRequest, default_account: Optional[str]) -> str:
    # An explicit ARN wins over any name and account tokens.
    require_role(request)
    if request.role_arn:
        return request.role_arn
    account = request.account_id or default_account
    if not account:
        raise HelperError(ErrorKind.ROLE_UNRESOLVED, f"No account id known for role '{request.role_name}'")
    return f"arn:aws:iam::{account}:role/{request.role_name}"


def session_name(caller_arn: str) -> str:
    return _session_name_invalid.sub("-", caller_arn)[:SESSION_NAME_LIMIT]
