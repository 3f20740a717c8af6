"""
Command-line surface — subcommands and the interactive menu.

Glue only: every command collects its input, calls one workflow entry point
inside a LoggingExecutionContext, and turns the Result into a message and an
exit status.

Usage::

    pki-manager init --name "HomeLab Root"
    pki-manager server db.local
    pki-manager user alice
    pki-manager revoke alice --reason key_compromise
    pki-manager revoke --serial 0x1001
    pki-manager crl
    pki-manager list
    pki-manager schedule
    pki-manager            # interactive menu

Exit status: 0 success, 1 failure, 3 failure needing operator attention
(a signed certificate is missing from the ledger).
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeAlias, TypeVar

from railway import FailureDescription, LoggingExecutionContext
from railway.result import Result

from pki_manager.domain.models import (
    CertificateRecord,
    OrphanedCertificate,
    RevocationReason,
    Role,
    SigningRequest,
    utc_now,
)

if TYPE_CHECKING:
    from pki_manager.main import Services

T = TypeVar("T")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_OPERATOR_ATTENTION = 3
_EXIT = -1  # menu sentinel, never a process status

Prompt: TypeAlias = Callable[[str], str]

MENU = """
--- PKI Manager (Revocation Enabled) ---
1. Init CA & Database
2. Create Server Cert
3. Create User Cert
4. Revoke User Cert
5. Update CRL (Generate crl.pem)
6. Exit"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pki-manager",
        description="Private CA manager: issue, track and revoke server and mTLS client certificates",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Create the CA key, certificate and ledger")
    init_parser.add_argument("--name", help="CA common name (prompted if omitted)")

    server_parser = subparsers.add_parser("server", help="Issue a server certificate")
    server_parser.add_argument("domain", nargs="?", help="DNS name or IPv4 address")

    user_parser = subparsers.add_parser("user", help="Issue an mTLS client certificate")
    user_parser.add_argument("username", nargs="?")
    user_parser.add_argument(
        "--no-p12",
        action="store_true",
        default=False,
        help="Skip the PKCS#12 bundle (no export password prompt)",
    )

    revoke_parser = subparsers.add_parser("revoke", help="Revoke a certificate and refresh the CRL")
    revoke_parser.add_argument("identity", nargs="?", help="Username or domain")
    revoke_parser.add_argument(
        "--serial",
        type=lambda value: int(value, 0),
        help="Revoke by serial instead (decimal or 0x-prefixed hex)",
    )
    revoke_parser.add_argument(
        "--reason",
        type=RevocationReason,
        choices=list(RevocationReason),
        default=RevocationReason.UNSPECIFIED,
    )
    revoke_parser.add_argument("--role", type=Role, choices=list(Role))

    subparsers.add_parser("crl", help="Rebuild and publish the CRL")
    subparsers.add_parser("list", help="Show every certificate in the ledger")
    subparsers.add_parser("schedule", help="Refresh the CRL periodically (blocks)")
    subparsers.add_parser("menu", help="Interactive menu (default)")

    return parser


def run(
    services: Services,
    args: argparse.Namespace,
    read: Prompt = input,
    read_secret: Prompt = getpass.getpass,
) -> int:
    """Dispatch one parsed command; returns the process exit status."""
    commands: dict[str, Callable[[], int]] = {
        "init": lambda: init_ca(services, args.name or read("Enter CA Name (e.g., HomeLab Root): ")),
        "server": lambda: issue_server(
            services, args.domain or read("Enter Server Domain or IP (e.g., 192.168.1.50): ")
        ),
        "user": lambda: issue_user(
            services,
            args.username or read("Enter Username (e.g., alice): "),
            None if args.no_p12 else read_secret("Enter Export Password: "),
        ),
        "revoke": lambda: _revoke_command(services, args, read),
        "crl": lambda: update_crl(services),
        "list": lambda: list_certificates(services),
        "schedule": lambda: schedule(services),
    }
    command = commands.get(args.command or "menu")
    if command is None:
        return run_menu(services, read, read_secret)
    try:
        return command()
    except EOFError:
        return _input_closed()


def run_menu(
    services: Services,
    read: Prompt = input,
    read_secret: Prompt = getpass.getpass,
) -> int:
    """
    The interactive loop; returns the status of the last operation on exit.

    End of input at the menu prompt leaves like option 6. End of input in
    the middle of an entry abandons it and the session ends in failure.
    """
    status = EXIT_OK
    while True:
        _say(MENU)
        try:
            choice = read("Select: ").strip()
        except EOFError:
            return status
        try:
            outcome = _menu_choice(services, choice, read, read_secret)
        except EOFError:
            return _input_closed()
        if outcome == _EXIT:
            return status
        if outcome is not None:
            status = outcome


def _menu_choice(
    services: Services,
    choice: str,
    read: Prompt,
    read_secret: Prompt,
) -> int | None:
    """Run one menu entry: its status, _EXIT to leave, None for invalid input."""
    match choice:
        case "1":
            return init_ca(services, read("Enter CA Name (e.g., HomeLab Root): "))
        case "2":
            return issue_server(services, read("Enter Server Domain or IP (e.g., 192.168.1.50): "))
        case "3":
            username = read("Enter Username (e.g., alice): ")
            return issue_user(services, username, read_secret("Enter Export Password: "))
        case "4":
            return revoke(services, read("Enter Username to Revoke: "), role=Role.CLIENT)
        case "5":
            return update_crl(services)
        case "6":
            return _EXIT
        case _:
            _say("Invalid")
            return None


# ─────────────────────── Commands ───────────────────────


def init_ca(services: Services, name: str) -> int:
    result = _within("InitializeCA", lambda: services.authority.initialize(name))
    return _report(result, lambda _: f"CA ready at {services.settings.ca.ca_dir}")


def issue_server(services: Services, domain: str) -> int:
    request = SigningRequest.for_server(domain, services.settings.ca.organization)
    result = _within(
        "IssueServerCertificate",
        lambda: services.issuance.issue(request, Role.SERVER),
    )
    return _report(
        result,
        lambda record: (
            f"Server cert created ({record.san}), serial {record.serial:#x}: "
            f"{services.artifacts.directory_for(Role.SERVER, record.identifier)}"
        ),
    )


def issue_user(services: Services, username: str, passphrase: str | None) -> int:
    request = SigningRequest.for_client(
        username,
        services.settings.ca.organization,
        services.settings.ca.client_unit,
    )
    result = _within(
        "IssueClientCertificate",
        lambda: services.issuance.issue(request, Role.CLIENT, passphrase),
    )
    return _report(
        result,
        lambda record: (
            f"User cert created for {record.identifier}, serial {record.serial:#x}: "
            f"{services.artifacts.directory_for(Role.CLIENT, record.identifier)}"
        ),
    )


def revoke(
    services: Services,
    identity: str,
    reason: RevocationReason = RevocationReason.UNSPECIFIED,
    role: Role | None = None,
) -> int:
    result = _within(
        "RevokeCertificate",
        lambda: services.revocation.revoke(identity, reason, role),
    )
    return _report(result, _revoked_message(services))


def revoke_serial(
    services: Services,
    serial: int,
    reason: RevocationReason = RevocationReason.UNSPECIFIED,
) -> int:
    result = _within(
        "RevokeSerial",
        lambda: services.revocation.revoke_serial(serial, reason),
    )
    return _report(result, _revoked_message(services))


def update_crl(services: Services) -> int:
    result = _within("UpdateCRL", services.crl_builder.build)
    return _report(
        result,
        lambda artifact: (
            f"CRL #{artifact.crl_number} created with {len(artifact.entries)} revoked "
            f"certificate(s): {services.settings.ca.crl_path}\n"
            "Upload this file to your web server."
        ),
    )


def list_certificates(services: Services) -> int:
    result = _within("ListCertificates", services.authority.ledger.records, logging.DEBUG)
    return _report(result, _format_records)


def schedule(services: Services) -> int:
    from pki_manager.scheduler import create_scheduler

    scheduler = create_scheduler(
        refresh_fn=services.crl_builder.build,
        cron=services.settings.scheduler.cron,
        run_on_startup=services.settings.scheduler.run_on_startup,
        next_update_days=services.settings.ca.crl_next_update_days,
    )
    try:
        scheduler.start()
    except KeyboardInterrupt:
        pass
    return EXIT_OK


# ─────────────────────── Helpers ───────────────────────


def _revoke_command(services: Services, args: argparse.Namespace, read: Prompt) -> int:
    if args.serial is not None:
        return revoke_serial(services, args.serial, args.reason)
    identity = args.identity or read("Enter Username to Revoke: ")
    return revoke(services, identity, args.reason, args.role)


def _revoked_message(services: Services) -> Callable[[CertificateRecord], str]:
    return lambda record: (
        f"Revoked serial {record.serial:#x} ({record.subject.rfc4514()}); "
        f"CRL updated: {services.settings.ca.crl_path}"
    )


def _within(
    operation: str,
    computation: Callable[[], Result[T]],
    log_level: int = logging.INFO,
) -> Result[T]:
    return LoggingExecutionContext(operation=operation, log_level=log_level).execute(computation)


def _report(result: Result[T], describe: Callable[[T], str]) -> int:
    if result.is_success():
        _say(describe(result.value()))
        return EXIT_OK
    error = result.error()
    _warn(f"ERROR {error}")
    if error.code.requires_operator_attention:
        _warn(_reconciliation_notice(error))
        return EXIT_OPERATOR_ATTENTION
    return EXIT_FAILURE


def _reconciliation_notice(error: FailureDescription) -> str:
    orphan = error.exception
    if not isinstance(orphan, OrphanedCertificate):
        return "Operator attention required: the ledger may be out of step with issued certificates."
    return (
        f"Operator attention required: serial {orphan.serial:#x} was signed but is not in the "
        "ledger. Record or revoke it by hand. Certificate follows:\n"
        + orphan.certificate_pem.decode("ascii", errors="replace")
    )


def _format_records(records: list[CertificateRecord]) -> str:
    if not records:
        return "No certificates issued yet."
    now = utc_now()
    lines = [f"{'SERIAL':<10} {'ROLE':<7} {'STATUS':<8} {'NOT AFTER':<20} SUBJECT"]
    for record in records:
        lines.append(
            f"{record.serial:<#10x} {record.role.value:<7} "
            f"{record.effective_status(now).value:<8} "
            f"{record.not_after:%Y-%m-%d %H:%M:%S} {record.subject.rfc4514()}"
        )
    return "\n".join(lines)


def _get_version() -> str:
    from pki_manager import __version__

    return __version__


def _input_closed() -> int:
    _warn("ERROR input closed before every prompt was answered")
    return EXIT_FAILURE


def _say(text: str) -> None:
    print(text)  # noqa: T201


def _warn(text: str) -> None:
    print(text, file=sys.stderr)  # noqa: T201
