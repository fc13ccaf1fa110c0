import os
import shutil
import subprocess
import tempfile
from logging import Logger
from pathlib import Path
from typing import Optional, Union, List, Tuple

from pemex.errors import (ToolchainNotFoundError, ToolchainExecutionError, ToolchainTimeoutError, ArchiveReadError,
                          DirectoryCreateError, ConflictError, CertificateExtractionError, KeyExtractionError,
                          AccessDeniedError, ResourceException)

from .utils import PfxArtifact, PemArtifactSet, OutputConflictPolicy, Checker, Fixer

STAGE = "Decomposing"


class PemDecomposer:
    """
    Splits a PKCS#12 archive into <base>-cert.pem, <base>-privkey.pem, <base>-chain.pem and <base>-fullchain.pem.

    SECURITY: <base>-privkey.pem holds the private key WITHOUT a passphrase (``-nodes``) so unattended services
    can read it. The file is created with mode 0600 where the platform supports it. Protect it accordingly.
    """

    CERT_FLAGS = ["-clcerts", "-nokeys"]
    KEY_FLAGS = ["-nocerts", "-nodes"]
    CHAIN_FLAGS = ["-cacerts", "-nokeys"]

    def __init__(self, timeout: Optional[float] = 30, legacy: bool = False, logger: Optional[Logger] = None) -> None:
        self.timeout = timeout
        self.legacy = legacy
        self.logger = Fixer.logger(logger)

    def __command(self, toolchain: Path, pfx: PfxArtifact, flags: List[str], out: Path) -> List[str]:
        command = [str(toolchain), "pkcs12", "-in", str(pfx.path), *flags, "-out", str(out), "-passin", "stdin"]
        if self.legacy:
            command.append("-legacy")

        return command

    def __extract(self, toolchain: Path, pfx: PfxArtifact, flags: List[str], out: Path) -> Tuple[int, bytes, str]:
        """
        Runs one sub-extraction. The password is written to the toolchain's stdin

        Parameters
        ----------
        toolchain : Path
            The openssl executable
        pfx : PfxArtifact
            The archive and its password
        flags : List[str]
            The filter flags of the sub-extraction
        out : Path
            The file the toolchain writes to

        Returns
        -------
        Tuple[int, bytes, str] :
            The exit code, the content of the output file and the error output
        """
        command = self.__command(toolchain, pfx, flags, out)
        self.logger.info(f"Running the toolchain. param({flags=}, {out=})")

        with pfx.secret.exposed(suffix=b"\n") as plaintext:
            try:
                result = subprocess.run(command, input=plaintext, capture_output=True, timeout=self.timeout)
            except OSError as e:
                # Missing, not permitted or not a program (ENOEXEC)
                self.logger.error(f"{e}")
                raise ToolchainNotFoundError(f"Cannot run the toolchain: {e}", stage=STAGE, path=toolchain) from e
            except subprocess.TimeoutExpired as e:
                self.logger.error(f"{e}")
                raise ToolchainTimeoutError(f"The toolchain did not finish in {self.timeout} seconds",
                                            stage=STAGE, path=pfx.path) from e

        stderr = result.stderr.decode("utf-8", errors="replace")

        try:
            content = out.read_bytes() if out.exists() else b""
        except OSError as e:
            self.logger.error(f"{e}")
            raise ResourceException(f"Cannot read the toolchain output: {e}", stage=STAGE, path=out) from e

        return result.returncode, content, stderr

    def __publish(self, staged: PemArtifactSet, output_dir: Path, base: str,
                  policy: OutputConflictPolicy) -> PemArtifactSet:
        """
        Moves the four staged files to the output directory. The policy is applied to all of them or none

        Parameters
        ----------
        staged : PemArtifactSet
            The finished files in the staging directory
        output_dir : Path
            The output directory
        base : str
            The base name of the outputs
        policy : OutputConflictPolicy
            What to do if any of the outputs exists

        Returns
        -------
        PemArtifactSet :
            The published files
        """
        when = Fixer.now()
        attempt = 0
        the_base = base

        while True:
            target = Fixer.pem_artifacts(output_dir, the_base)

            existing = [each for each in target.paths() if each.exists()]
            if existing and policy is not OutputConflictPolicy.OVERWRITE:
                if policy is OutputConflictPolicy.ABORT:
                    self.logger.error(f"Output already exists: {existing[0]}")
                    raise ConflictError("Output already exists", stage=STAGE, path=existing[0])

                the_base = Fixer.timestamped_name(base, when, attempt)
                attempt += 1
                continue

            published = []
            try:
                for source, destination in zip(staged.paths(), target.paths()):
                    Fixer.publish(source, destination, overwrite=policy is OutputConflictPolicy.OVERWRITE)
                    published.append((source, destination))

                return target
            except FileExistsError:
                # Lost a race
                self.__rollback(published)

                if policy is OutputConflictPolicy.ABORT:
                    self.logger.error(f"Output appeared while publishing: {target.output_dir}")
                    raise ConflictError("Output appeared while publishing", stage=STAGE, path=target.output_dir)
            except PermissionError as e:
                self.__rollback(published)
                self.logger.error(f"{e}")
                raise AccessDeniedError(f"Cannot write the outputs: {e}", stage=STAGE, path=output_dir) from e
            except OSError as e:
                self.__rollback(published)
                self.logger.error(f"{e}")
                raise ResourceException(f"Cannot write the outputs: {e}", stage=STAGE, path=output_dir) from e

    def __rollback(self, published: List[Tuple[Path, Path]]) -> None:
        """Moves the files this call already published back to the staging directory"""
        for source, destination in published:
            try:
                os.replace(destination, source)
            except OSError as e:
                self.logger.warning(f"Cannot take back a published output. param({destination=}, {e=})")

    def decompose(self, toolchain: Union[str, Path], pfx: PfxArtifact, output_dir: Union[str, Path],
                  policy: OutputConflictPolicy = OutputConflictPolicy.ABORT) -> PemArtifactSet:
        """
        Decomposes a PKCS#12 archive into four PEM files

        Parameters
        ----------
        toolchain : Union[str, Path]
            The openssl executable
        pfx : PfxArtifact
            The archive and its password. The password is not released here
        output_dir : Union[str, Path]
            The directory the PEM files are written to. Created if missing
        policy : OutputConflictPolicy
            What to do if any of the outputs exists

        Returns
        -------
        PemArtifactSet :
            The written files. full_chain is exactly cert followed by chain
        """
        self.logger.info(f"Decomposing an archive. param({toolchain=}, {pfx.path=}, {output_dir=}, {policy=})")

        toolchain = Path(toolchain)
        if not Checker.executable(toolchain):
            self.logger.error(f"Toolchain is not executable: {toolchain}")
            raise ToolchainNotFoundError("The toolchain is not an executable", stage=STAGE, path=toolchain)

        if not pfx.path.is_file() or not os.access(pfx.path, os.R_OK):
            self.logger.error(f"Archive is not readable: {pfx.path}")
            raise ArchiveReadError("The archive is missing or not readable", stage=STAGE, path=pfx.path)

        output_dir = Fixer.directory(output_dir, stage=STAGE)

        try:
            staging = Path(tempfile.mkdtemp(prefix=".pemex_", dir=output_dir))
        except OSError as e:
            self.logger.error(f"{e}")
            raise DirectoryCreateError(f"Cannot create the staging directory: {e}", stage=STAGE,
                                       path=output_dir) from e

        try:
            staged = Fixer.pem_artifacts(staging, "staged")

            code, cert, stderr = self.__extract(toolchain, pfx, self.CERT_FLAGS, staged.cert)
            if code != 0:
                self.logger.error(f"Certificate extraction failed: {stderr}")
                raise ToolchainExecutionError("Certificate extraction failed", stage=STAGE, path=pfx.path,
                                              stderr=stderr, returncode=code)
            if not Checker.has_pem(cert, "CERTIFICATE"):
                self.logger.error("No certificate in the archive")
                raise CertificateExtractionError("No certificate in the archive", stage=STAGE, path=pfx.path)

            code, key, stderr = self.__extract(toolchain, pfx, self.KEY_FLAGS, staged.private_key)
            if code != 0:
                self.logger.error(f"Private key extraction failed: {stderr}")
                raise ToolchainExecutionError("Private key extraction failed", stage=STAGE, path=pfx.path,
                                              stderr=stderr, returncode=code)
            if not Checker.has_pem(key, "PRIVATE KEY"):
                self.logger.error("No private key in the archive")
                raise KeyExtractionError("No private key in the archive", stage=STAGE, path=pfx.path)

            code, chain, stderr = self.__extract(toolchain, pfx, self.CHAIN_FLAGS, staged.chain)
            if not Checker.has_pem(chain):
                if code != 0:
                    self.logger.warning(f"Chain extraction failed with empty output, no intermediates. param({code=})")
                chain = b""
            elif code != 0:
                self.logger.error(f"Chain extraction failed: {stderr}")
                raise ToolchainExecutionError("Chain extraction failed", stage=STAGE, path=pfx.path,
                                              stderr=stderr, returncode=code)

            try:
                staged.chain.write_bytes(chain)
                staged.full_chain.write_bytes(cert + chain)
                staged.private_key.chmod(0o600)
            except OSError as e:
                self.logger.error(f"{e}")
                raise ResourceException(f"Cannot write the outputs: {e}", stage=STAGE, path=staging) from e

            artifacts = self.__publish(staged, output_dir, pfx.path.stem, policy)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        self.logger.info(f"Archive decomposed. param({artifacts=})")

        return artifacts
