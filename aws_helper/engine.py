"""Session transitions over the credential slot.

Every public method runs one subcommand to completion and returns a ``Result``.
A transition gathers everything it needs from the provider first and writes
the slot with a single ``apply`` at the end, so a failed call never leaves a
partial credential set behind. ``set-creds`` and ``saml-login`` start with a
reset and therefore leave the slot cleared when they fail.
"""
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from botocore.configloader import raw_config_parse
from botocore.exceptions import BotoCoreError

from aws_helper.aliases import AliasStore
from aws_helper.config import (
    DEFAULT_ASSUME_ROLE_DURATION,
    DEFAULT_SAML_DURATION,
    DEFAULT_SESSION_TOKEN_DURATION,
)
from aws_helper.errors import ErrorKind, HelperError, MissingArgument, ProviderError
from aws_helper.log import Logger
from aws_helper.provider import CallerIdentity, IdentityProvider, TemporaryCredentials, ToolMissing
from aws_helper.resolver import (
    AssumeRoleRequest,
    expand_alias,
    parse_assume_role,
    parse_duration,
    parse_file,
    parse_mfa,
    parse_profile,
    parse_silent,
    require_role,
    role_arn,
    session_name,
    undeclared_flags,
)
from aws_helper.slot import CredentialSlot, Layer, Profile, SlotState, parse_expiry

_federated_role = re.compile(r"arn:aws[\w-]*:iam::(?P<account>\d+):role/[\w+=,.@/-]+")


@dataclass(frozen=True)
class Result:
    ok: bool
    snapshot: SlotState
    error: Optional[HelperError] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


def prompt_stdin(message: str) -> str:
    print(message, file=sys.stderr, end="", flush=True)
    try:
        return input().strip()
    except EOFError:
        return ""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_federated_login(text: str) -> Dict[str, Optional[str]]:
    """Best-effort role and account lookup in the SAML helper's login output."""
    match = _federated_role.search(text or "")
    if not match:
        return {"role_arn": None, "account_id": None}
    return {"role_arn": match.group(0), "account_id": match.group("account")}


class SessionEngine:
    def __init__(
        self,
        slot: CredentialSlot,
        provider: IdentityProvider,
        aliases: AliasStore,
        logger: Logger,
        credentials_file: Optional[Path] = None,
        prompt: Callable[[str], str] = prompt_stdin,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._slot = slot
        self._provider = provider
        self._aliases = aliases
        self._logger = logger
        self._credentials_file = credentials_file
        self._prompt = prompt
        self._clock = clock

    @property
    def slot(self) -> CredentialSlot:
        return self._slot

    def _outcome(self, action: Callable[[], None], silent: bool = False) -> Result:
        with self._logger.silenced(silent):
            try:
                action()
            except HelperError as error:
                self._logger.error(error.detail)
                return Result(False, self._slot.snapshot(), error)
        return Result(True, self._slot.snapshot())

    def _caller_identity(self, state: SlotState) -> CallerIdentity:
        try:
            identity = self._provider.get_caller_identity(state)
        except ProviderError as error:
            raise HelperError(ErrorKind.CREDENTIALS_INVALID, f"Unable to validate credentials: {error}") from error
        if not (identity.account_id and identity.arn and identity.user_id):
            raise HelperError(ErrorKind.CREDENTIALS_INVALID, "Error checking credentials")
        return identity

    def _validated_fields(self, state: SlotState) -> Dict[str, object]:
        identity = self._caller_identity(state)
        fields: Dict[str, object] = {
            "account_id": identity.account_id,
            "caller_arn": identity.arn,
            "user_id": identity.user_id,
        }
        if state.layer == Layer.UNAUTHENTICATED and state.identity_source is not None:
            fields["layer"] = Layer.BASE_VALIDATED
        return fields

    def _base_fields(self, state: SlotState) -> Dict[str, object]:
        """Silent validation used as the precondition of every elevation."""
        with self._logger.silenced():
            try:
                return self._validated_fields(state)
            except HelperError as error:
                raise HelperError(
                    ErrorKind.NO_BASE_CREDENTIALS,
                    "No valid credentials present - Use aws-helper set-creds",
                ) from error

    def _mfa_serial(self, state: SlotState, kind: ErrorKind) -> str:
        try:
            serials = self._provider.list_mfa_device_serials(state)
        except ProviderError as error:
            raise HelperError(kind, f"Failed to retrieve MFA devices: {error}") from error
        if not serials:
            raise HelperError(kind, "No MFA device is registered for the current identity")
        return serials[0]

    def _log_identity(self, state: SlotState) -> None:
        self._logger.info(f"AWS Profile: {state.profile or ''}")
        self._logger.info(f"Account ID: {state.account_id}")
        self._logger.info(f"ARN: {state.caller_arn}")
        self._logger.info(f"User ID: {state.user_id}")

    @staticmethod
    def _secrets(credentials: TemporaryCredentials) -> Dict[str, object]:
        return {
            "access_key_id": credentials.access_key_id,
            "secret_access_key": credentials.secret_access_key,
            "session_token": credentials.session_token,
        }

    # clear

    def _clear(self) -> None:
        self._logger.info("Clearing environment credentials")
        self._slot.reset()

    def clear(self) -> Result:
        return self._outcome(self._clear)

    # set-creds

    def _set_creds(self, profile: Optional[str]) -> None:
        self._clear()
        if not profile:
            profile = self._prompt("Enter AWS profile: ")
        if not profile:
            raise MissingArgument("PROFILE", "No AWS profile given")
        candidate = SlotState(identity_source=Profile(profile))
        try:
            fields = self._validated_fields(candidate)
        except HelperError:
            self._logger.error("Error setting credentials")
            raise
        self._log_identity(self._slot.apply(identity_source=Profile(profile), **fields))

    def set_creds(self, profile: Optional[str] = None) -> Result:
        return self._outcome(lambda: self._set_creds(profile))

    # validate

    def _validate(self) -> None:
        fields = self._validated_fields(self._slot.snapshot())
        self._log_identity(self._slot.apply(**fields))

    def validate(self, silent: bool = False) -> Result:
        return self._outcome(self._validate, silent)

    # get-session-token

    def _get_session_token(self, duration: Optional[int]) -> None:
        state = self._slot.snapshot()
        try:
            credentials = self._provider.get_session_token(state, duration or DEFAULT_SESSION_TOKEN_DURATION)
        except ProviderError as error:
            raise HelperError(ErrorKind.TOKEN_VEND_FAILED, f"Failed to get STS session token: {error}") from error
        if not credentials.complete:
            raise HelperError(ErrorKind.TOKEN_VEND_FAILED, "STS response did not contain a full set of credentials")
        self._slot.apply(
            identity_source=None,
            layer=Layer.SESSION_TOKEN,
            session_expiry=credentials.expiration,
            mfa_expiry=None,
            assumed_role_arn=None,
            federated_role_arn=None,
            **self._secrets(credentials),
        )
        self._logger.info("STS session token obtained")

    def get_session_token(self, duration: Optional[int] = None) -> Result:
        return self._outcome(lambda: self._get_session_token(duration))

    # mfa

    def _mfa(self, code: Optional[str], duration: Optional[int]) -> None:
        state = self._slot.snapshot()
        if state.layer in (Layer.SESSION_TOKEN, Layer.ROLE_ASSUMED) or state.session_token:
            raise HelperError(ErrorKind.ALREADY_ELEVATED, "STS token already present - Use aws-helper clear")
        fields = self._base_fields(state)
        serial = self._mfa_serial(state, ErrorKind.MFA_FAILED)
        if not code:
            code = self._prompt("Enter MFA token: ")
        if not code:
            raise MissingArgument("MFA code", "No MFA token given")
        try:
            credentials = self._provider.get_session_token(
                state, duration or DEFAULT_SESSION_TOKEN_DURATION, mfa_serial=serial, mfa_code=code
            )
        except ProviderError as error:
            raise HelperError(ErrorKind.MFA_FAILED, f"Failed to get STS token: {error}") from error
        if not credentials.complete or credentials.expiration is None:
            raise HelperError(ErrorKind.MFA_FAILED, "MFA failed")
        fields["layer"] = Layer.SESSION_TOKEN
        self._slot.apply(
            mfa_expiry=credentials.expiration,
            session_expiry=credentials.expiration,
            assumed_role_arn=None,
            federated_role_arn=None,
            **self._secrets(credentials),
            **fields,
        )
        self._logger.info("MFA successful")

    def mfa(self, code: Optional[str] = None, duration: Optional[int] = None) -> Result:
        return self._outcome(lambda: self._mfa(code, duration))

    # mfa-validate

    def _mfa_validate(self) -> None:
        state = self._slot.snapshot()
        if state.layer != Layer.SESSION_TOKEN or not state.session_token or state.mfa_expiry is None:
            raise HelperError(ErrorKind.NO_SESSION, "No STS session present - Use aws-helper mfa to obtain one")
        expiry = state.mfa_expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        delta = int((expiry - self._clock()).total_seconds())
        if delta <= 0:
            raise HelperError(ErrorKind.SESSION_EXPIRED, "MFA session expired")
        self._logger.info(f"MFA session valid for next {delta} seconds")

    def mfa_validate(self, silent: bool = False) -> Result:
        return self._outcome(self._mfa_validate, silent)

    # assume-role

    def _assume_role(self, tokens: Sequence[str]) -> None:
        expanded = expand_alias(tokens, self._aliases.lookup)
        if tokens and expanded != list(tokens):
            self._logger.info(f"Using alias '{tokens[0]}': {' '.join(expanded)}")
        request: AssumeRoleRequest = parse_assume_role(expanded)
        for flag in undeclared_flags(expanded):
            self._logger.warn(f"Unknown option '{flag}' is treated as a role name")
        require_role(request)
        state = self._slot.snapshot()
        fields = self._base_fields(state)
        arn = role_arn(request, fields["account_id"])
        name = session_name(str(fields["caller_arn"]))
        serial = self._mfa_serial(state, ErrorKind.ASSUME_ROLE_FAILED) if request.mfa_code else None
        try:
            credentials = self._provider.assume_role(
                state,
                arn,
                name,
                request.duration or DEFAULT_ASSUME_ROLE_DURATION,
                external_id=request.external_id,
                mfa_serial=serial,
                mfa_code=request.mfa_code,
            )
        except ProviderError as error:
            raise HelperError(ErrorKind.ASSUME_ROLE_FAILED, f"Failed to assume role {arn}: {error}") from error
        if not credentials.complete:
            raise HelperError(ErrorKind.ASSUME_ROLE_FAILED, f"Failed to assume role {arn}: incomplete credentials")
        fields["layer"] = Layer.ROLE_ASSUMED
        self._slot.apply(
            assumed_role_arn=arn,
            session_expiry=credentials.expiration,
            mfa_expiry=None,
            federated_role_arn=None,
            **self._secrets(credentials),
            **fields,
        )
        self._logger.info(f"Assumed role {arn} as session {name}")

    def assume_role(self, tokens: Sequence[str]) -> Result:
        return self._outcome(lambda: self._assume_role(tokens))

    # saml-login

    def _saml_login(self, duration: Optional[int]) -> None:
        self._clear()
        try:
            response = self._provider.federated_login(duration or DEFAULT_SAML_DURATION)
            exported = self._provider.export_environment()
        except ToolMissing as error:
            raise HelperError(ErrorKind.TOOL_UNAVAILABLE, str(error)) from error
        except ProviderError as error:
            raise HelperError(ErrorKind.SAML_LOGIN_FAILED, f"SAML login failed: {error}") from error
        credentials = TemporaryCredentials(
            access_key_id=exported.get("AWS_ACCESS_KEY_ID"),
            secret_access_key=exported.get("AWS_SECRET_ACCESS_KEY"),
            session_token=exported.get("AWS_SESSION_TOKEN") or exported.get("AWS_SECURITY_TOKEN"),
            expiration=parse_expiry(exported.get("AWS_CREDENTIAL_EXPIRATION")),
        )
        if not credentials.complete:
            raise HelperError(ErrorKind.SAML_LOGIN_FAILED, "SAML helper did not export a full set of credentials")
        parsed = parse_federated_login(response)
        self._slot.apply(
            layer=Layer.SESSION_TOKEN,
            session_expiry=credentials.expiration,
            account_id=parsed["account_id"],
            federated_role_arn=parsed["role_arn"],
            **self._secrets(credentials),
        )
        if parsed["role_arn"]:
            self._logger.info(f"SAML login successful as {parsed['role_arn']}")
        else:
            self._logger.warn("SAML login successful, but the role could not be determined")

    def saml_login(self, duration: Optional[int] = None) -> Result:
        return self._outcome(lambda: self._saml_login(duration))

    # read-only commands

    def _list_creds(self, path: Optional[str]) -> None:
        credentials_file = Path(path).expanduser() if path else self._credentials_file
        if credentials_file is None or not credentials_file.is_file():
            raise HelperError(ErrorKind.TOOL_UNAVAILABLE, f"Credentials file not found: {credentials_file}")
        try:
            sections = raw_config_parse(str(credentials_file))
        except BotoCoreError as error:
            raise HelperError(ErrorKind.TOOL_UNAVAILABLE, f"Unable to read {credentials_file}: {error}") from error
        active = self._slot.snapshot().profile
        if not sections:
            self._logger.warn(f"No credentials found in {credentials_file}")
        for name in sections:
            self._logger.write(f"{'*' if name == active else ' '} {name}")

    def list_creds(self, path: Optional[str] = None) -> Result:
        return self._outcome(lambda: self._list_creds(path))

    def _list_aliases(self) -> None:
        entries = self._aliases.entries()
        if not entries:
            self._logger.warn(f"No aliases defined in {self._aliases.path}")
            return
        width = max(len(name) for name in entries)
        for name, body in entries.items():
            self._logger.write(f"{name.ljust(width)}  {body}")

    def list_aliases(self) -> Result:
        return self._outcome(self._list_aliases)

    def _status(self) -> None:
        state = self._slot.snapshot()
        if state.layer == Layer.UNAUTHENTICATED and state.identity_source is None:
            self._logger.warn("Cannot find AWS credentials configured by aws-helper.")
            return
        self._logger.write(f"Layer    :  {state.layer.value}")
        self._logger.write(f"Identity :  {state.identity_source or 'session credentials'}")
        self._logger.write(f"Account  :  {state.account_id or 'unknown'}")
        if state.caller_arn:
            self._logger.write(f"Caller   :  {state.caller_arn}")
        if state.assumed_role_arn:
            self._logger.write(f"Role     :  {state.assumed_role_arn}")
        if state.federated_role_arn:
            self._logger.write(f"SAML role:  {state.federated_role_arn}")
        if state.mfa_expiry:
            self._logger.write(f"MFA until:  {state.mfa_expiry.isoformat()}")
        elif state.session_expiry:
            self._logger.write(f"Expires  :  {state.session_expiry.isoformat()}")

    def status(self) -> Result:
        return self._outcome(self._status)

    # dispatch

    def run(self, command: str, tokens: Sequence[str]) -> Result:
        """Parses the raw tokens of ``command`` and runs the matching transition."""
        tokens = list(tokens)
        if command == "validate":
            return self.validate(parse_silent(tokens).silent)
        if command == "mfa-validate":
            return self.mfa_validate(parse_silent(tokens).silent)
        if command == "assume-role":
            return self.assume_role(tokens)
        parsers: Dict[str, Callable[[List[str]], Result]] = {
            "clear": lambda _: self.clear(),
            "set-creds": lambda t: self.set_creds(parse_profile(t).profile),
            "get-session-token": lambda t: self.get_session_token(parse_duration(t).duration),
            "mfa": lambda t: self.mfa(*_mfa_args(t)),
            "saml-login": lambda t: self.saml_login(parse_duration(t).duration),
            "list-creds": lambda t: self.list_creds(parse_file(t).path),
            "list-aliases": lambda _: self.list_aliases(),
            "status": lambda _: self.status(),
        }
        try:
            if command not in parsers:
                raise MissingArgument("command", f"Unknown action '{command}'")
            return parsers[command](tokens)
        except HelperError as error:
            self._logger.error(error.detail)
            return Result(False, self._slot.snapshot(), error)


def _mfa_args(tokens: List[str]):
    request = parse_mfa(tokens)
    return request.code, request.duration
