import os
import json
import subprocess
import tempfile
from datetime import datetime, timezone
from logging import Logger
from pathlib import Path
from typing import Optional, List, Dict, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from pemex.errors import StoreReadError, AccessDeniedError, ChainBuildError

from .models import CertificateStoreModel
from .secret import SecretHandle
from .utils import CertificateRef, StoreScope, Checker, Fixer

STAGE = "Exporting"


class DirectoryCertificateStore(CertificateStoreModel):
    """
    A certificate store kept in a directory.

    root/user/public/<name>.crt       certificate (PEM)
    root/user/private/<name>.key      unencrypted private key (PEM), optional
    root/machine/...                  same layout for the machine scope
    root/ca/*.crt, root/ca/*.pem      issuer certificates used to build chains
    """

    SCOPES = {
        StoreScope.USER_PERSONAL: "user",
        StoreScope.MACHINE_PERSONAL: "machine",
    }
    MAX_CHAIN_LENGTH = 10

    def __init__(self, root: Union[str, Path], logger: Optional[Logger] = None) -> None:
        self.root = Path(root)
        self.logger = Fixer.logger(logger)

    def __scope_dir(self, scope: StoreScope) -> Path:
        return self.root / self.SCOPES[scope]

    def __key_path(self, crt_path: Path) -> Path:
        return crt_path.parent.parent / "private" / f"{crt_path.stem}.key"

    def __read(self, path: Path, scope: StoreScope) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            self.logger.error(f"{e}")
            raise StoreReadError("The certificate is no longer in the store", stage=STAGE, path=path) from e
        except PermissionError as e:
            self.logger.error(f"{e}")
            if scope is StoreScope.MACHINE_PERSONAL:
                raise AccessDeniedError("Reading machine certificates requires elevated privileges",
                                        stage=STAGE, path=path) from e
            raise AccessDeniedError(f"{e}", stage=STAGE, path=path) from e
        except OSError as e:
            self.logger.error(f"{e}")
            raise StoreReadError(f"{e}", stage=STAGE, path=path) from e

    def __certificate_ref(self, crt_path: Path, scope: StoreScope) -> CertificateRef:
        """
        Creates a CertificateRef from a certificate file

        Parameters
        ----------
        crt_path : Path
            The certificate file
        scope : StoreScope
            The scope the file belongs to

        Returns
        -------
        CertificateRef :
            The reference of the certificate
        """
        certificate = x509.load_pem_x509_certificate(crt_path.read_bytes())

        return CertificateRef(
            scope=scope,
            locator=str(crt_path),
            subject=certificate.subject.rfc4514_string(),
            friendly_name=crt_path.stem,
            thumbprint=certificate.fingerprint(hashes.SHA1()).hex().upper(),
            expires_at=certificate.not_valid_after_utc,
            has_private_key=self.__key_path(crt_path).is_file(),
        )

    def __issuers(self) -> List[x509.Certificate]:
        ca_dir = self.root / "ca"
        if not ca_dir.is_dir():
            return []

        issuers = []
        for each in sorted(ca_dir.iterdir()):
            if each.suffix not in {".crt", ".pem", ".cer"} or not each.is_file():
                continue
            try:
                issuers.extend(x509.load_pem_x509_certificates(each.read_bytes()))
            except ValueError as e:
                self.logger.warning(f"Skipping unreadable issuer certificate. param({each=}, {e=})")

        return issuers

    def __chain(self, certificate: x509.Certificate) -> List[x509.Certificate]:
        """
        Builds the chain of intermediates of a certificate. Self-signed roots are not included

        Parameters
        ----------
        certificate : x509.Certificate
            The leaf certificate

        Returns
        -------
        List[x509.Certificate] :
            The intermediates, the issuer of the leaf first
        """
        issuers = self.__issuers()
        chain = []
        current = certificate
        while current.issuer != current.subject:
            issuer = next((each for each in issuers if each.subject == current.issuer), None)
            if issuer is None:
                raise ChainBuildError(f"Issuer not found: {current.issuer.rfc4514_string()}", stage=STAGE)

            if issuer.issuer == issuer.subject:
                break

            if len(chain) >= self.MAX_CHAIN_LENGTH or issuer in chain:
                raise ChainBuildError("The chain does not terminate", stage=STAGE)

            chain.append(issuer)
            current = issuer

        return chain

    def list_certificates(self, scope: StoreScope) -> List[CertificateRef]:
        """
        Returns all certificates of a scope

        Parameters
        ----------
        scope : StoreScope
            The scope to list

        Returns
        -------
        List[CertificateRef] :
            The certificates sorted by file name. Unreadable files are skipped
        """
        self.logger.info(f"Listing certificates. param({scope=})")

        public_dir = self.__scope_dir(scope) / "public"
        if not public_dir.is_dir():
            return []

        certificates = []
        for crt_path in sorted(public_dir.glob("*.crt")):
            try:
                certificates.append(self.__certificate_ref(crt_path, scope))
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable certificate. param({crt_path=}, {e=})")

        return certificates

    def get(self, thumbprint: str, scope: StoreScope) -> CertificateRef:
        """
        Returns a certificate of a scope

        Parameters
        ----------
        thumbprint : str
            The SHA-1 thumbprint of the certificate
        scope : StoreScope
            The scope to search

        Returns
        -------
        CertificateRef :
            The certificate
        """
        self.logger.info(f"Getting a certificate. param({thumbprint=}, {scope=})")

        thumbprint = Checker.thumbprint(thumbprint)
        for each in self.list_certificates(scope):
            if each.thumbprint == thumbprint:
                return each

        self.logger.error(f"Certificate with thumbprint {thumbprint} not found")
        raise StoreReadError(f"Certificate with thumbprint {thumbprint} not found", stage=STAGE)

    def build_chain_and_export(self, certificate: CertificateRef, secret: SecretHandle,
                               include_chain: bool = True) -> bytes:
        """
        Returns a PKCS#12 archive of a certificate, its private key and, if asked, its chain

        Parameters
        ----------
        certificate : CertificateRef
            The certificate to export
        secret : SecretHandle
            The password the archive is encrypted with
        include_chain : bool
            Add the intermediates to the archive. ChainBuildError is raised if they can not be found

        Returns
        -------
        bytes :
            The PKCS#12 archive
        """
        self.logger.info(f"Exporting a certificate. param({certificate.thumbprint=}, {include_chain=})")

        crt_path = Path(certificate.locator)
        cert_data = self.__read(crt_path, certificate.scope)
        key_data = self.__read(self.__key_path(crt_path), certificate.scope)

        try:
            the_certificate = x509.load_pem_x509_certificate(cert_data)
            key = serialization.load_pem_private_key(key_data, password=None)
        except (ValueError, TypeError) as e:
            self.logger.error(f"{e}")
            raise StoreReadError(f"Cannot parse the certificate or its key: {e}", stage=STAGE, path=crt_path) from e

        if the_certificate.fingerprint(hashes.SHA1()).hex().upper() != certificate.thumbprint:
            self.logger.error("The certificate changed since it was listed")
            raise StoreReadError("The certificate changed since it was listed", stage=STAGE, path=crt_path)

        chain = self.__chain(the_certificate) if include_chain else []

        with secret.exposed() as plaintext:
            return pkcs12.serialize_key_and_certificates(
                name=certificate.friendly_name.encode("utf-8"),
                key=key,
                cert=the_certificate,
                cas=chain or None,
                encryption_algorithm=serialization.BestAvailableEncryption(bytes(plaintext)),
            )


class WindowsCertificateStore(CertificateStoreModel):
    """The personal certificate stores of Windows, driven through PowerShell's Cert: provider"""

    LOCATIONS = {
        StoreScope.USER_PERSONAL: "Cert:\\CurrentUser\\My",
        StoreScope.MACHINE_PERSONAL: "Cert:\\LocalMachine\\My",
    }

    LIST_SCRIPT = """$ErrorActionPreference = 'Stop'
$items = @(Get-ChildItem -Path '__LOCATION__' | ForEach-Object {
    [PSCustomObject]@{
        Subject = $_.Subject
        FriendlyName = $_.FriendlyName
        Thumbprint = $_.Thumbprint
        NotAfter = $_.NotAfter.ToUniversalTime().ToString('yyyy-MM-ddTHH:mm:ssZ')
        HasPrivateKey = $_.HasPrivateKey
    }
})
ConvertTo-Json -InputObject $items -Compress
"""

    EXPORT_SCRIPT = """$ErrorActionPreference = 'Stop'
$password = ConvertTo-SecureString -String ([Console]::In.ReadLine()) -AsPlainText -Force
$certificate = Get-Item -Path '__LOCATOR__'
Export-PfxCertificate -Cert $certificate -FilePath '__TARGET__' -Password $password -ChainOption __CHAIN__ | Out-Null
"""

    def __init__(self, shell: str = "powershell", timeout: Optional[float] = 60,
                 logger: Optional[Logger] = None) -> None:
        self.shell = shell
        self.timeout = timeout
        self.logger = Fixer.logger(logger)

    @staticmethod
    def __quote(value: str) -> str:
        return value.replace("'", "''")

    def __error(self, stderr: str, certificate: Optional[CertificateRef] = None,
                include_chain: bool = False) -> Exception:
        """
        Maps the error output of PowerShell to an exception

        Parameters
        ----------
        stderr : str
            The error output
        certificate : CertificateRef, optional
            The certificate the command worked on
        include_chain : bool
            The command was asked to build the chain

        Returns
        -------
        Exception :
            The exception to raise
        """
        text = stderr.lower()
        locator = certificate.locator if certificate is not None else None

        if "not valid for use in specified state" in text or "0x8009000b" in text:
            return AccessDeniedError("The private key is not exportable", stage=STAGE, path=locator,
                                     hint="Re-import the certificate with an exportable private key.")

        if "access is denied" in text or "unauthorizedaccess" in text or "0x80070005" in text:
            if certificate is not None and certificate.scope is StoreScope.MACHINE_PERSONAL:
                return AccessDeniedError("Exporting machine certificates requires elevated privileges",
                                         stage=STAGE, path=locator,
                                         hint="Run again from an elevated (Run as administrator) session.")
            return AccessDeniedError(stderr.strip(), stage=STAGE, path=locator)

        if include_chain and "chain" in text:
            return ChainBuildError(stderr.strip(), stage=STAGE, path=locator)

        if "cannot find path" in text or "itemnotfound" in text or "does not exist" in text:
            return StoreReadError("The certificate is no longer in the store", stage=STAGE, path=locator)

        return StoreReadError(stderr.strip() or "PowerShell failed", stage=STAGE, path=locator)

    def __run(self, script: str, stdin: Optional[bytearray] = None,
              certificate: Optional[CertificateRef] = None, include_chain: bool = False) -> str:
        command = [self.shell, "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            result = subprocess.run(command, input=stdin, check=True, capture_output=True, timeout=self.timeout)
        except FileNotFoundError as e:
            self.logger.error(f"{e}")
            raise StoreReadError(f"PowerShell not found: {self.shell}", stage=STAGE) from e
        except subprocess.TimeoutExpired as e:
            self.logger.error(f"{e}")
            raise StoreReadError("PowerShell did not answer in time", stage=STAGE) from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", errors="replace")
            self.logger.error(f"{stderr}")
            raise self.__error(stderr, certificate=certificate, include_chain=include_chain) from e

        return result.stdout.decode("utf-8", errors="replace")

    def __certificate_ref(self, item: Dict, scope: StoreScope) -> CertificateRef:
        thumbprint = str(item["Thumbprint"]).upper()
        return CertificateRef(
            scope=scope,
            locator=f"{self.LOCATIONS[scope]}\\{thumbprint}",
            subject=str(item.get("Subject") or ""),
            friendly_name=str(item.get("FriendlyName") or ""),
            thumbprint=thumbprint,
            expires_at=datetime.strptime(item["NotAfter"], "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc),
            has_private_key=bool(item.get("HasPrivateKey")),
        )

    def list_certificates(self, scope: StoreScope) -> List[CertificateRef]:
        """
        Returns all certificates of a scope

        Parameters
        ----------
        scope : StoreScope
            The scope to list

        Returns
        -------
        List[CertificateRef] :
            The certificates
        """
        self.logger.info(f"Listing certificates. param({scope=})")

        output = self.__run(self.LIST_SCRIPT.replace("__LOCATION__", self.__quote(self.LOCATIONS[scope])))

        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            self.logger.error(f"{e}")
            raise StoreReadError(f"Unexpected store listing: {e}", stage=STAGE) from e

        if isinstance(items, dict):
            items = [items]

        return [self.__certificate_ref(item, scope) for item in items]

    def get(self, thumbprint: str, scope: StoreScope) -> CertificateRef:
        """Returns the certificate with the given thumbprint"""
        self.logger.info(f"Getting a certificate. param({thumbprint=}, {scope=})")

        thumbprint = Checker.thumbprint(thumbprint)
        for each in self.list_certificates(scope):
            if each.thumbprint == thumbprint:
                return each

        self.logger.error(f"Certificate with thumbprint {thumbprint} not found")
        raise StoreReadError(f"Certificate with thumbprint {thumbprint} not found", stage=STAGE)

    def build_chain_and_export(self, certificate: CertificateRef, secret: SecretHandle,
                               include_chain: bool = True) -> bytes:
        """
        Returns a PKCS#12 archive made by Export-PfxCertificate. The password is written to its stdin

        Parameters
        ----------
        certificate : CertificateRef
            The certificate to export
        secret : SecretHandle
            The password the archive is encrypted with
        include_chain : bool
            BuildChain if True, EndEntityCertOnly otherwise

        Returns
        -------
        bytes :
            The PKCS#12 archive
        """
        self.logger.info(f"Exporting a certificate. param({certificate.thumbprint=}, {include_chain=})")

        with tempfile.TemporaryDirectory(prefix="pemex_") as temp_dir:
            target = Path(temp_dir) / "export.pfx"
            script = (
                self.EXPORT_SCRIPT
                .replace("__LOCATOR__", self.__quote(certificate.locator))
                .replace("__TARGET__", self.__quote(str(target)))
                .replace("__CHAIN__", "BuildChain" if include_chain else "EndEntityCertOnly")
            )

            with secret.exposed(suffix=b"\n") as plaintext:
                self.__run(script, stdin=plaintext, certificate=certificate, include_chain=include_chain)

            try:
                return target.read_bytes()
            except OSError as e:
                self.logger.error(f"{e}")
                raise StoreReadError("PowerShell did not write the archive", stage=STAGE,
                                     path=certificate.locator) from e


def open_store(location: Optional[Union[str, Path]] = None, logger: Optional[Logger] = None) -> CertificateStoreModel:
    """
    Returns the store named by a location

    Parameters
    ----------
    location : Union[str, Path], optional
        "windows" for the Windows certificate stores, a directory for a DirectoryCertificateStore.
        If not given, "windows" on Windows and "./certs" elsewhere

    Returns
    -------
    CertificateStoreModel :
        The store
    """
    if location is None:
        location = "windows" if os.name == "nt" else "certs"

    if str(location).lower() == "windows":
        return WindowsCertificateStore(logger=logger)

    return DirectoryCertificateStore(location, logger=logger)
