import getpass
import os
from pathlib import Path
from typing import List, Optional

from pemex.errors import PemexException

from .decomposer import PemDecomposer
from .models import CertificateStoreModel, StatusSinkModel
from .pipeline import Pipeline, HistorySink
from .store import open_store
from .utils import (CertificateRef, StoreScope, OutputConflictPolicy, ExportRequest, StatusEvent, PipelineResult,
                    Checker)


class ConsoleSink(StatusSinkModel):
    def __init__(self, history: Optional[HistorySink] = None) -> None:
        self.history = history

    def emit(self, event: StatusEvent) -> None:
        print(f"[{event.timestamp:%H:%M:%S}] {event.stage.value}: {event.message}")
        if self.history is not None:
            self.history.emit(event)


def ask_yes_no(question: str) -> bool:
    while True:
        answer = input(f"{question} (y/n): ").strip().lower()
        if answer.upper() in ["YES", "Y"]:
            return True
        elif answer.upper() in ["NO", "N"]:
            return False
        else:
            print("Please answer with 'y/yes' or 'n/no'.")


def ask_choice(question: str, options: List[str]) -> int:
    """Prints numbered options and returns the index of the chosen one."""
    for number, option in enumerate(options, start=1):
        print(f"\t{number}) {option}")

    while True:
        answer = input(f"{question} [1-{len(options)}]: ").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return int(answer) - 1
        print("Please choose one of the numbers above.")


def get_scope() -> StoreScope:
    """Asks for the store scope."""
    scopes = list(StoreScope)
    return scopes[ask_choice("Which store?", [scope.value for scope in scopes])]


def get_certificate(store: CertificateStoreModel, scope: StoreScope) -> Optional[CertificateRef]:
    """Asks for one of the exportable certificates of a scope."""
    certificates = [each for each in store.list_certificates(scope) if each.has_private_key]
    if not certificates:
        print("No certificate with a private key found in this store.")
        return None

    index = ask_choice("Which certificate?", [
        f"{each.subject} (expires {each.expires_at:%Y-%m-%d}, {each.thumbprint})"
        for each in certificates
    ])
    return certificates[index]


def get_password_safe() -> str:
    """Asks for the export password twice."""
    while True:
        password = getpass.getpass("Enter the export password: ")
        if not password:
            print("Password cannot be empty.")
            continue

        if password != getpass.getpass("Enter the export password (repeat): "):
            print("Passwords does not match")
            continue

        return password


def get_output_dir() -> Path:
    """Asks for the output directory."""
    output_dir = input("Enter the output directory (leave empty for the current directory): ").strip()
    return Path(output_dir or ".")


def get_pfx_name(certificate: CertificateRef) -> str:
    """Asks for the archive's name."""
    default = certificate.friendly_name or certificate.thumbprint
    while True:
        name = input(f"Enter the archive name (leave empty for `{default}`): ").strip() or default
        try:
            Checker.safe(name, "Name")
            return name
        except ValueError as e:
            print(e)


def get_policy() -> OutputConflictPolicy:
    """Asks what to do with existing files."""
    policies = list(OutputConflictPolicy)
    return policies[ask_choice("If a file exists", [policy.value for policy in policies])]


def print_result(result: PipelineResult) -> None:
    print()
    for warning in result.warnings:
        print(f"Warning: {warning}")

    if result.ok:
        print(f"Archive:     {result.pfx.path}")
        print(f"Certificate: {result.pem.cert}")
        print(f"Private key: {result.pem.private_key} (NOT encrypted, keep it safe)")
        print(f"Chain:       {result.pem.chain}")
        print(f"Full chain:  {result.pem.full_chain}")
    else:
        print(f"{result.state.value}: {result.error}")


def main() -> int:
    print("Welcome to pemex. Export a certificate and its key for a Linux TLS server.")
    print("")

    history = os.environ.get("PemexHistory")
    sink = ConsoleSink(HistorySink(history) if history else None)
    store = open_store(os.environ.get("PemexStore"))
    try:
        timeout = float(os.environ.get("PemexTimeout", "30"))
    except ValueError:
        print(f"PemexTimeout must be a number of seconds, not `{os.environ.get('PemexTimeout')}`")
        return 2

    decomposer = PemDecomposer(timeout=timeout,
                               legacy=os.environ.get("PemexLegacy", "").lower() in ["1", "true", "yes"])

    try:
        print("1) Select the certificate")
        scope = get_scope()
        certificate = get_certificate(store, scope)
    except PemexException as e:
        print(f"Cannot read the store: {e}")
        return 2

    if certificate is None:
        return 1
    print()

    print("2) Output")
    output_dir = get_output_dir()
    pfx_name = get_pfx_name(certificate)
    policy = get_policy()
    print()

    print("3) Password of the archive")
    password = get_password_safe()
    print()

    toolchain = os.environ.get("PemexOpenSSL")
    request = ExportRequest(
        certificate=certificate,
        pfx_path=output_dir / f"{pfx_name}.pfx",
        output_dir=output_dir,
        policy=policy,
        toolchain=Path(toolchain) if toolchain else None,
    )

    if not ask_yes_no(f"Export {certificate.subject} to {request.pfx_path}?"):
        return 1

    result = Pipeline(store, sink=sink, decomposer=decomposer).run(request, password)
    print_result(result)

    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
