import os
import sys
from argparse import REMAINDER, ArgumentParser, HelpFormatter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from aws_helper import __version__
from aws_helper.aliases import AliasStore
from aws_helper.config import PROG, Settings
from aws_helper.engine import SessionEngine
from aws_helper.log import Logger
from aws_helper.provider import BotocoreProvider
from aws_helper.shell import export_statements, init_script
from aws_helper.slot import CredentialSlot, from_environ


@dataclass(frozen=True)
class Command:
    summary: str
    usage: str
    exports: bool = True


COMMANDS: Dict[str, Command] = {
    "clear": Command(
        "Unset AWS credentials",
        f"""Clear current environment credentials.

Usage: {PROG} clear""",
    ),
    "validate": Command(
        "Perform an STS get-caller-identity to validate current credentials",
        f"""Validate current AWS environment credentials

Usage: {PROG} validate [OPTIONS]

Options:
  --silent  Suppress all output""",
    ),
    "set-creds": Command(
        "Set AWS credentials in current shell",
        f"""Set AWS_PROFILE environment variable and validate credentials.

Usage: {PROG} set-creds [PROFILE]

Notes: If profile is not provided then stdin is used.""",
    ),
    "get-session-token": Command(
        "Obtain an STS session without MFA",
        f"""Obtain an STS session token and set environment variables accordingly.

Usage: {PROG} get-session-token [OPTIONS]

Options:
  --duration VALUE  Duration, in seconds, that credentials should remain valid.
                    Valid ranges are 900 to 129600. Default is 43,200 seconds (12 hours).""",
    ),
    "mfa": Command(
        "Obtain an MFA STS session",
        f"""Obtain STS token using MFA and set environment variables accordingly.

Usage: {PROG} mfa [MFA TOKEN] [OPTIONS]

Options:
  --duration VALUE  Duration, in seconds, that credentials should remain valid.
                    Valid ranges are 900 to 129600. Default is 43,200 seconds (12 hours).

Notes: If token is not provided then stdin is used.""",
    ),
    "mfa-validate": Command(
        "Validate current MFA session",
        f"""Validate current AWS STS MFA credentials

Usage: {PROG} mfa-validate [OPTIONS]

Options:
  --silent  Suppress all output""",
    ),
    "assume-role": Command(
        "Assume an IAM role, optionally in another account",
        f"""Assume an IAM role and set environment variables accordingly.

Usage: {PROG} assume-role ROLE_ARN [OPTIONS]
       {PROG} assume-role ROLE_NAME [ACCOUNT] [OPTIONS]
       {PROG} assume-role ALIAS

Options:
  --external-id VALUE  External id required by the role's trust policy.
  --mfa VALUE          MFA token, for roles that require MFA.
  --duration VALUE     Duration, in seconds, that credentials should remain valid.
                       Default is 3,600 seconds (1 hour).

Notes: ACCOUNT defaults to the account of the current credentials.
       ALIAS is looked up in the alias file (AWS_HELPER_ALIAS_FILE).""",
    ),
    "saml-login": Command(
        "Log in through saml2aws and import its credentials",
        f"""Clear current credentials, log in with saml2aws and import the resulting session.

Usage: {PROG} saml-login [OPTIONS]

Options:
  --duration VALUE  Session duration, in seconds. Default is 3,600 seconds (1 hour).""",
    ),
    "list-creds": Command(
        "List profiles in the AWS credentials file",
        f"""List the named sections of the AWS shared credentials file.

Usage: {PROG} list-creds [OPTIONS]

Options:
  --file PATH  Credentials file to read. Default is AWS_SHARED_CREDENTIALS_FILE or ~/.aws/credentials.""",
        exports=False,
    ),
    "list-aliases": Command(
        "List assume-role aliases",
        f"""List the entries of the alias file.

Usage: {PROG} list-aliases""",
        exports=False,
    ),
    "status": Command(
        "Describe the credentials of the current shell",
        f"""Describe the current credential layer without calling AWS.

Usage: {PROG} status""",
        exports=False,
    ),
    "init": Command(
        "Print the shell function and completion to source",
        f"""Print the {PROG} shell function and its tab completion.

Usage: eval "$({PROG} init)"   # add to ~/.bashrc""",
        exports=False,
    ),
    "help": Command("This command", f"Usage: {PROG} [action] help", exports=False),
}


def _print_help(out=None) -> None:
    out = out or sys.stderr
    print(f"Use the syntax {PROG} [action] help to get further information on a command\n", file=out)
    width = max(len(name) for name in COMMANDS)
    print(f"{'Action'.ljust(width)}  Summary", file=out)
    print(f"{'-' * width}  -------", file=out)
    for name in sorted(COMMANDS):
        print(f"{name.ljust(width)}  {COMMANDS[name].summary}", file=out)


def build_engine(settings: Settings, environ: Mapping[str, str], logger: Logger) -> SessionEngine:
    return SessionEngine(
        slot=CredentialSlot(from_environ(environ)),
        provider=BotocoreProvider(settings),
        aliases=AliasStore(settings.alias_file),
        logger=logger,
        credentials_file=settings.credentials_file,
    )


def _parser() -> ArgumentParser:
    parser = ArgumentParser(
        description="Layered AWS credentials for the current shell: profiles, MFA sessions and assumed roles.",
        prog=PROG,
        formatter_class=lambda prog: HelpFormatter(prog, width=100),
        add_help=False,
    )
    # stdout is evaluated by the shell function, so help and version go to stderr.
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("command", nargs="?", default="help")
    parser.add_argument("arguments", nargs=REMAINDER)
    return parser


def main(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    args = _parser().parse_args(argv)
    environ = os.environ if environ is None else environ
    logger = Logger()

    if args.version:
        print(f"{PROG} {__version__}", file=sys.stderr)
        return 0
    command = COMMANDS.get(args.command)
    if command is None or args.command == "help" or args.help:
        if command is None:
            logger.error(f"Unknown action '{args.command}'")
        _print_help()
        return 0 if command else 1
    if args.arguments and args.arguments[0] == "help":
        print(command.usage, file=sys.stderr)
        return 0
    if args.command == "init":
        print(init_script(COMMANDS), file=sys.stdout)
        return 0

    settings = Settings.from_environ(environ, warn=logger.warn)
    engine = build_engine(settings, environ, logger)
    result = engine.run(args.command, args.arguments)
    if command.exports:
        print("\n".join(export_statements(result.snapshot)), file=sys.stdout)
    return result.exit_code
