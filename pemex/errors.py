from pathlib import Path
from typing import Optional, Union


class PemexException(Exception):
    """Raised for every failure of the export/convert pipeline"""

    def __init__(self, message: str, stage: Optional[str] = None,
                 path: Optional[Union[str, Path]] = None) -> None:
        self.message = message
        self.stage = stage
        self.path = Path(path) if path is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        parts = []
        if self.stage is not None:
            parts.append(f"[{self.stage}]")
        parts.append(self.message)
        if self.path is not None:
            parts.append(f"({self.path})")
        return " ".join(parts)


class ValidationException(PemexException):
    """Raised when user input is not acceptable. Nothing was touched"""


class EmptySecretError(ValidationException):
    """Raised when the export password is null or empty"""


class SecretReleasedError(ValidationException):
    """Raised when a released secret is used again"""


class NoPrivateKeyError(ValidationException):
    """Raised when the certificate does not carry a private key"""


class AccessDeniedError(PemexException):
    """Raised when the current user lacks the rights for the operation"""

    def __init__(self, message: str, stage: Optional[str] = None,
                 path: Optional[Union[str, Path]] = None,
                 hint: str = "Run again with elevated privileges (administrator/root).") -> None:
        super().__init__(message, stage=stage, path=path)
        self.hint = hint


class ResourceException(PemexException):
    """Raised when a file, directory or store entry is not usable"""


class DirectoryCreateError(ResourceException):
    """Raised when the output directory can not be created"""


class ConflictError(ResourceException):
    """Raised when an output file already exists and the policy is to abort"""


class StoreReadError(ResourceException):
    """Raised when the certificate vanished or became unreadable"""


class ArchiveReadError(ResourceException):
    """Raised when the PKCS#12 archive is missing or not readable"""


class ChainBuildError(PemexException):
    """Raised when the certification chain can not be built. Not fatal for an export"""


class ExtractionException(PemexException):
    """Raised when the toolchain succeeded but produced no usable output"""


class CertificateExtractionError(ExtractionException):
    """Raised when no leaf certificate was extracted"""


class KeyExtractionError(ExtractionException):
    """Raised when no private key was extracted"""


class ToolchainException(PemexException):
    """Raised when the external toolchain can not do its job"""


class ToolchainNotFoundError(ToolchainException):
    """Raised when the toolchain executable can not be resolved"""


class ToolchainExecutionError(ToolchainException):
    """Raised when the toolchain exits with a non-zero code"""

    def __init__(self, message: str, stage: Optional[str] = None,
                 path: Optional[Union[str, Path]] = None,
                 stderr: str = "", returncode: Optional[int] = None) -> None:
        super().__init__(message, stage=stage, path=path)
        self.stderr = stderr
        self.returncode = returncode

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            text = f"{text}: {self.stderr.strip()}"
        return text


class ToolchainTimeoutError(ToolchainException):
    """Raised when the toolchain did not finish in time"""
