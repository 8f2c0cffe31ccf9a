"""Shell statements written to stdout for the calling shell to ``eval``."""
import shlex
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from aws_helper.config import PROG
from aws_helper.slot import SlotState, StaticKeys


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def environment(state: SlotState) -> Dict[str, Optional[str]]:
    """Maps the slot onto its environment variables; ``None`` means unset."""
    access_key_id = state.access_key_id
    secret_access_key = state.secret_access_key
    if not state.has_secrets and isinstance(state.identity_source, StaticKeys):
        access_key_id = state.identity_source.access_key_id
        secret_access_key = state.identity_source.secret_access_key
    return {
        "AWS_ACCESS_KEY_ID": access_key_id,
        "AWS_SECRET_ACCESS_KEY": secret_access_key,
        "AWS_SESSION_TOKEN": state.session_token,
        "AWS_PROFILE": state.profile,
        "AWS_ROLE": state.assumed_role_arn,
        "AWS_MFA_EXPIRY": _isoformat(state.mfa_expiry),
        "AWS_SESSION_EXPIRY": _isoformat(state.session_expiry),
        "AWS_HELPER_LAYER": state.layer.value,
        "AWS_HELPER_ACCOUNT_ID": state.account_id,
        "AWS_HELPER_CALLER_ARN": state.caller_arn,
        "AWS_HELPER_USER_ID": state.user_id,
        "AWS_HELPER_FEDERATED_ROLE": state.federated_role_arn,
    }


def export_statements(state: SlotState) -> List[str]:
    statements = []
    for name, value in environment(state).items():
        if value:
            statements.append(f"export {name}={shlex.quote(value)}")
        else:
            statements.append(f"unset {name}")
    return statements


def init_script(commands: Iterable[str], executable: str = PROG) -> str:
    return "\n".join(
        [
            f"{PROG}() {{",
            "  local output status",
            f'  output="$(command {executable} "$@")"',
            "  status=$?",
            '  eval "${output}"',
            "  return ${status}",
            "}",
            f'complete -W "{" ".join(sorted(commands))}" {PROG}',
        ]
    )
