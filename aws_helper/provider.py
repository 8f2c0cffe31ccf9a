"""Identity provider clients.

``IdentityProvider`` is the seam between the transition engine and AWS. The
production implementation talks to STS and IAM through botocore and drives
``saml2aws`` as a subprocess for federated logins. Every call is bounded by the
configured timeout and is never retried.
"""
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from botocore.session import Session

from aws_helper.config import Settings
from aws_helper.errors import ProviderError
from aws_helper.slot import SlotState, StaticKeys

_fallback_region = "us-east-1"
_export_line = re.compile(r"""^\s*export\s+(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*?)\s*$""")


class ToolMissing(ProviderError):
    """The external helper executable cannot be found."""


@dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    arn: str
    user_id: str


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: Optional[str]
    secret_access_key: Optional[str]
    session_token: Optional[str]
    expiration: Optional[datetime] = None

    @property
    def complete(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.session_token)


class IdentityProvider(ABC):
    @abstractmethod
    def get_caller_identity(self, state: SlotState) -> CallerIdentity:
        pass

    @abstractmethod
    def list_mfa_device_serials(self, state: SlotState) -> List[str]:
        pass

    @abstractmethod
    def get_session_token(
        self,
        state: SlotState,
        duration: int,
        mfa_serial: Optional[str] = None,
        mfa_code: Optional[str] = None,
    ) -> TemporaryCredentials:
        pass

    @abstractmethod
    def assume_role(
        self,
        state: SlotState,
        role_arn: str,
        session_name: str,
        duration: int,
        external_id: Optional[str] = None,
        mfa_serial: Optional[str] = None,
        mfa_code: Optional[str] = None,
    ) -> TemporaryCredentials:
        pass

    @abstractmethod
    def federated_login(self, duration: int) -> str:
        pass

    @abstractmethod
    def export_environment(self) -> Dict[str, str]:
        pass


def _temporary_credentials(response: dict) -> TemporaryCredentials:
    credentials = response.get("Credentials") or {}
    return TemporaryCredentials(
        access_key_id=credentials.get("AccessKeyId"),
        secret_access_key=credentials.get("SecretAccessKey"),
        session_token=credentials.get("SessionToken"),
        expiration=credentials.get("Expiration"),
    )


class Saml2Aws:
    def __init__(self, executable: str, timeout: int) -> None:
        self._executable = executable
        self._timeout = timeout

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        binary = shutil.which(self._executable)
        if binary is None:
            raise ToolMissing(f"'{self._executable}' is not installed or not on PATH")
        try:
            completed = subprocess.run(
                [binary, *args], capture_output=True, text=True, timeout=self._timeout, check=False
            )
        except subprocess.TimeoutExpired as error:
            raise ProviderError(f"'{self._executable} {args[0]}' timed out after {self._timeout} seconds") from error
        except OSError as error:
            raise ProviderError(f"Unable to run '{self._executable}': {error}") from error
        if completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "").strip()
            raise ProviderError(f"'{self._executable} {args[0]}' exited with {completed.returncode}: {output}")
        return completed

    def login(self, duration: int) -> str:
        completed = self._run("login", "--skip-prompt", "--force", f"--session-duration={duration}")
        return "\n".join(part for part in (completed.stdout, completed.stderr) if part)

    def script(self) -> Dict[str, str]:
        completed = self._run("script", "--shell=bash")
        return parse_exports(completed.stdout)


def parse_exports(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        match = _export_line.match(line)
        if not match:
            continue
        value = match.group("value")
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[match.group("key")] = value
    return values


class BotocoreProvider(IdentityProvider):
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._config = Config(
            connect_timeout=settings.timeout,
            read_timeout=settings.timeout,
            retries={"total_max_attempts": 1},
        )
        self._saml = Saml2Aws(settings.saml_tool, settings.timeout)

    def _client(self, service: str, state: SlotState):
        try:
            session = Session(profile=state.profile) if state.profile else Session()
            region = self._settings.region or session.get_config_variable("region") or _fallback_region
            if state.has_secrets:
                return session.create_client(
                    service,
                    region_name=region,
                    aws_access_key_id=state.access_key_id,
                    aws_secret_access_key=state.secret_access_key,
                    aws_session_token=state.session_token,
                    config=self._config,
                )
            if isinstance(state.identity_source, StaticKeys):
                return session.create_client(
                    service,
                    region_name=region,
                    aws_access_key_id=state.identity_source.access_key_id,
                    aws_secret_access_key=state.identity_source.secret_access_key,
                    config=self._config,
                )
            return session.create_client(service, region_name=region, config=self._config)
        except BotoCoreError as error:
            raise ProviderError(str(error)) from error

    def get_caller_identity(self, state: SlotState) -> CallerIdentity:
        try:
            identity = self._client("sts", state).get_caller_identity()
        except (BotoCoreError, ClientError) as error:
            raise ProviderError(str(error)) from error
        return CallerIdentity(identity["Account"], identity["Arn"], identity["UserId"])

    def list_mfa_device_serials(self, state: SlotState) -> List[str]:
        try:
            devices = self._client("iam", state).list_mfa_devices()["MFADevices"]
        except (BotoCoreError, ClientError) as error:
            raise ProviderError(str(error)) from error
        return [device["SerialNumber"] for device in devices]

    def get_session_token(
        self,
        state: SlotState,
        duration: int,
        mfa_serial: Optional[str] = None,
        mfa_code: Optional[str] = None,
    ) -> TemporaryCredentials:
        kwargs = {"DurationSeconds": duration}
        if mfa_serial and mfa_code:
            kwargs.update(SerialNumber=mfa_serial, TokenCode=mfa_code)
        try:
            response = self._client("sts", state).get_session_token(**kwargs)
        except (BotoCoreError, ClientError) as error:
            raise ProviderError(str(error)) from error
        return _temporary_credentials(response)

    def assume_role(
        self,
        state: SlotState,
        role_arn: str,
        session_name: str,
        duration: int,
        external_id: Optional[str] = None,
        mfa_serial: Optional[str] = None,
        mfa_code: Optional[str] = None,
    ) -> TemporaryCredentials:
        kwargs = {"RoleArn": role_arn, "RoleSessionName": session_name, "DurationSeconds": duration}
        if external_id:
            kwargs["ExternalId"] = external_id
        if mfa_serial and mfa_code:
            kwargs.update(SerialNumber=mfa_serial, TokenCode=mfa_code)
        try:
            response = self._client("sts", state).assume_role(**kwargs)
        except (BotoCoreError, ClientError) as error:
            raise ProviderError(str(error)) from error
        return _temporary_credentials(response)

    def federated_login(self, duration: int) -> str:
        return self._saml.login(duration)

    def export_environment(self) -> Dict[str, str]:
        return self._saml.script()
