import tempfile
from logging import Logger
from pathlib import Path
from typing import Optional, Union, Tuple

from pemex.errors import (NoPrivateKeyError, ConflictError, ChainBuildError, AccessDeniedError, ResourceException,
                          SecretReleasedError)

from .models import CertificateStoreModel
from .secret import SecretHandle
from .utils import CertificateRef, PfxArtifact, OutputConflictPolicy, Fixer

STAGE = "Exporting"


class PfxExporter:
    def __init__(self, store: CertificateStoreModel, logger: Optional[Logger] = None) -> None:
        self.store = store
        self.logger = Fixer.logger(logger)

    def __archive(self, certificate: CertificateRef, secret: SecretHandle) -> Tuple[bytes, bool]:
        """
        Asks the store for the archive. Falls back to the leaf and its key if the chain can not be built

        Parameters
        ----------
        certificate : CertificateRef
            The certificate to export
        secret : SecretHandle
            The password of the archive

        Returns
        -------
        Tuple[bytes, bool] :
            The archive and whether the chain is in it
        """
        try:
            return self.store.build_chain_and_export(certificate, secret, include_chain=True), True
        except ChainBuildError as e:
            self.logger.warning(f"Chain is not available, exporting the leaf and its key only. param({e=})")

        return self.store.build_chain_and_export(certificate, secret, include_chain=False), False

    def __write(self, content: bytes, destination: Path, policy: OutputConflictPolicy) -> Path:
        """
        Writes the archive next to the destination and publishes it according to the policy

        Parameters
        ----------
        content : bytes
            The archive
        destination : Path
            The requested path
        policy : OutputConflictPolicy
            What to do if the destination exists

        Returns
        -------
        Path :
            The path the archive was written to
        """
        when = Fixer.now()

        temp = None
        try:
            with tempfile.NamedTemporaryFile(dir=destination.parent, prefix=f".{destination.stem}_",
                                             suffix=".tmp", delete=False) as handle:
                temp = Path(handle.name)
                handle.write(content)
        except OSError as e:
            if temp is not None:
                temp.unlink(missing_ok=True)
            self.logger.error(f"{e}")
            if isinstance(e, PermissionError):
                raise AccessDeniedError(f"Cannot write the archive: {e}", stage=STAGE, path=destination) from e
            raise ResourceException(f"Cannot write the archive: {e}", stage=STAGE, path=destination) from e

        try:
            target = destination
            attempt = 0
            while True:
                try:
                    Fixer.publish(temp, target, overwrite=policy is OutputConflictPolicy.OVERWRITE)
                    return target
                except FileExistsError:
                    if policy is OutputConflictPolicy.ABORT:
                        self.logger.error(f"Destination already exists: {target}")
                        raise ConflictError("Destination already exists", stage=STAGE, path=target)

                    target = Fixer.timestamped(destination, when, attempt)
                    attempt += 1
        except PermissionError as e:
            self.logger.error(f"{e}")
            raise AccessDeniedError(f"Cannot write the archive: {e}", stage=STAGE, path=destination) from e
        except OSError as e:
            self.logger.error(f"{e}")
            raise ResourceException(f"Cannot write the archive: {e}", stage=STAGE, path=destination) from e
        finally:
            temp.unlink(missing_ok=True)

    def export(self, certificate: CertificateRef, destination: Union[str, Path], secret: SecretHandle,
               policy: OutputConflictPolicy = OutputConflictPolicy.ABORT) -> PfxArtifact:
        """
        Exports a certificate, its private key and its chain to a PKCS#12 archive

        Parameters
        ----------
        certificate : CertificateRef
            The certificate. Must carry a private key
        destination : Union[str, Path]
            The archive's path. Its parent directory is created if missing
        secret : SecretHandle
            The password the archive is encrypted with. Not released here
        policy : OutputConflictPolicy
            What to do if the destination exists

        Returns
        -------
        PfxArtifact :
            The written archive. chain_included is False if the chain could not be built
        """
        self.logger.info(f"Exporting a certificate to PFX. param({certificate.thumbprint=}, {destination=}, {policy=})")

        destination = Path(destination)

        if not certificate.has_private_key:
            self.logger.error(f"Certificate {certificate.thumbprint} has no private key")
            raise NoPrivateKeyError(f"Certificate {certificate.thumbprint} has no private key",
                                    stage=STAGE, path=destination)

        if secret.released:
            raise SecretReleasedError("The export password was already released", stage=STAGE)

        Fixer.directory(destination.parent, stage=STAGE)

        if policy is OutputConflictPolicy.ABORT and destination.exists():
            self.logger.error(f"Destination already exists: {destination}")
            raise ConflictError("Destination already exists", stage=STAGE, path=destination)

        content, chain_included = self.__archive(certificate, secret)
        path = self.__write(content, destination, policy)

        self.logger.info(f"Archive written. param({path=}, {chain_included=})")

        return PfxArtifact(path=path, secret=secret, chain_included=chain_included)
