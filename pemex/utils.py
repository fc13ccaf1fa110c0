import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging import Logger, getLogger
from pathlib import Path
from typing import List, Optional, Union

from pemex.errors import DirectoryCreateError, AccessDeniedError, PemexException
from pemex.secret import SecretHandle


class StoreScope(Enum):
    USER_PERSONAL = "UserPersonal"
    MACHINE_PERSONAL = "MachinePersonal"


class OutputConflictPolicy(Enum):
    ABORT = "Abort"
    OVERWRITE = "Overwrite"
    RENAME_WITH_TIMESTAMP = "RenameWithTimestamp"


class PipelineState(Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    EXPORTING = "Exporting"
    DECOMPOSING = "Decomposing"
    COMPLETE = "Complete"
    ABORTED = "Aborted"
    FAILED = "Failed"


@dataclass(frozen=True)
class CertificateRef:
    scope: StoreScope
    locator: str
    subject: str
    friendly_name: str
    thumbprint: str
    expires_at: datetime
    has_private_key: bool


@dataclass(frozen=True)
class PfxArtifact:
    path: Path
    secret: SecretHandle = field(repr=False)
    chain_included: bool = True


@dataclass(frozen=True)
class PemArtifactSet:
    output_dir: Path
    cert: Path
    private_key: Path
    chain: Path
    full_chain: Path

    def paths(self) -> List[Path]:
        return [self.cert, self.private_key, self.chain, self.full_chain]


@dataclass(frozen=True)
class StatusEvent:
    stage: PipelineState
    timestamp: datetime
    message: str


@dataclass(frozen=True)
class ExportRequest:
    certificate: CertificateRef
    pfx_path: Path
    output_dir: Path
    policy: OutputConflictPolicy = OutputConflictPolicy.ABORT
    toolchain: Optional[Path] = None


@dataclass
class PipelineResult:
    state: PipelineState = PipelineState.IDLE
    pfx: Optional[PfxArtifact] = None
    pem: Optional[PemArtifactSet] = None
    error: Optional[PemexException] = None
    events: List[StatusEvent] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.COMPLETE


class Checker:
    @staticmethod
    def safe(value: str, the_field: str = "input") -> None:
        """
        Checks if the given value is safe to be used as a file name

        Parameters
        ----------
        value : str
            The value to be checked
        the_field : str
            The name of the value

        Returns
        -------
        None
        """
        if not re.match(r"^[\w\-.]+$", value) or value in {".", ".."}:
            raise ValueError(f"Unsafe characters detected in {the_field}: '{value}'")

    @staticmethod
    def thumbprint(thumbprint: str) -> str:
        """
        Checks if the given value is a SHA-1 thumbprint and returns it in upper case

        Parameters
        ----------
        thumbprint : str
            The thumbprint to be checked. Colons and spaces are ignored

        Returns
        -------
        str :
            The normalized thumbprint
        """
        cleaned = re.sub(r"[\s:]", "", thumbprint).upper()
        if not re.match(r"^[0-9A-F]{40}$", cleaned):
            raise ValueError(f"Invalid thumbprint format: '{thumbprint}'")

        return cleaned

    @staticmethod
    def executable(path: Union[str, Path]) -> bool:
        """
        Checks if the given path is an executable file

        Parameters
        ----------
        path : Union[str, Path]
            The path to be checked

        Returns
        -------
        bool :
            True if the path can be executed
        """
        the_path = Path(path)
        return the_path.is_file() and os.access(the_path, os.X_OK)

    @staticmethod
    def has_pem(content: bytes, label: str = "") -> bool:
        """
        Checks if the content carries at least one PEM block

        Parameters
        ----------
        content : bytes
            The content of a PEM file
        label : str
            The end of the block's label. "CERTIFICATE", "PRIVATE KEY" etc. Any block if empty

        Returns
        -------
        bool :
            True if a block with the label begins in the content
        """
        return re.search(rb"-----BEGIN [A-Z0-9 ]*" + re.escape(label.encode("ascii")) + rb"-----", content) is not None


class Fixer:
    @staticmethod
    def logger(logger: Optional[Logger] = None, name: Optional[str] = None) -> Logger:
        """
        Checks if a logger is passed as an argument. If not, it returns a logger with the specified name
        or a default name.

        Parameters
        ----------
        logger: Logger, default = None
            An optional Logger instance.
        name: str, default = None
            An optional string representing the name of the logger.

        Returns
        -------
        Logger
            The logger to use
        """
        if logger is None:
            if name is None:
                return getLogger("pemex")
            else:
                return getLogger(name)
        else:
            return logger

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def directory(path: Union[str, Path], stage: Optional[str] = None) -> Path:
        """
        Makes sure the given directory exists

        Parameters
        ----------
        path : Union[str, Path]
            The directory
        stage : str, optional
            The pipeline stage, used in the error

        Returns
        -------
        Path :
            The Path object of the directory
        """
        the_path = Path(path)
        try:
            the_path.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise AccessDeniedError(f"Cannot create directory: {e}", stage=stage, path=the_path) from e
        except OSError as e:
            raise DirectoryCreateError(f"Cannot create directory: {e}", stage=stage, path=the_path) from e

        if not the_path.is_dir():
            raise DirectoryCreateError("Not a directory", stage=stage, path=the_path)

        return the_path

    @staticmethod
    def timestamped(path: Path, when: datetime, attempt: int = 0) -> Path:
        """
        Returns a sibling of the given path with a second-resolution timestamp appended to its stem

        Parameters
        ----------
        path : Path
            The original path
        when : datetime
            The timestamp
        attempt : int
            A counter appended after the timestamp when greater than zero

        Returns
        -------
        Path :
            out.pfx -> out_20240101120000.pfx (or out_20240101120000_1.pfx)
        """
        return path.with_name(f"{Fixer.timestamped_name(path.stem, when, attempt)}{path.suffix}")

    @staticmethod
    def timestamped_name(name: str, when: datetime, attempt: int = 0) -> str:
        """out -> out_20240101120000, or out_20240101120000_<attempt> if attempt is not zero"""
        stamped = f"{name}_{when.strftime('%Y%m%d%H%M%S')}"
        if attempt:
            stamped = f"{stamped}_{attempt}"

        return stamped

    @staticmethod
    def publish(source: Path, target: Path, overwrite: bool = False) -> None:
        """
        Moves a finished file to its final place.
        Without overwrite the target is created exclusively and FileExistsError is raised if it exists.

        Parameters
        ----------
        source : Path
            The finished temporary file. Must be on the same file system as target
        target : Path
            The final path
        overwrite : bool
            Replace the target if it exists

        Returns
        -------
        None
        """
        if overwrite:
            os.replace(source, target)
            return

        try:
            os.link(source, target)
        except FileExistsError:
            raise
        except OSError:
            # No hard links on this file system. Fall back to an exclusive create
            with open(target, "xb") as destination:
                try:
                    with open(source, "rb") as origin:
                        shutil.copyfileobj(origin, destination)
                except OSError:
                    destination.close()
                    target.unlink()
                    raise
            shutil.copymode(source, target)

        source.unlink()

    @staticmethod
    def pem_artifacts(output_dir: Path, base: str) -> PemArtifactSet:
        """
        Returns the four conventional PEM paths of a base name

        Parameters
        ----------
        output_dir : Path
            The directory the files would be written to
        base : str
            The base name. The PFX file name without its extension

        Returns
        -------
        PemArtifactSet :
            <base>-cert.pem, <base>-privkey.pem, <base>-chain.pem and <base>-fullchain.pem
        """
        return PemArtifactSet(
            output_dir=output_dir,
            cert=output_dir / f"{base}-cert.pem",
            private_key=output_dir / f"{base}-privkey.pem",
            chain=output_dir / f"{base}-chain.pem",
            full_chain=output_dir / f"{base}-fullchain.pem",
        )
