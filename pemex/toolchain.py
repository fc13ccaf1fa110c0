import shutil
from logging import Logger
from pathlib import Path
from typing import Optional, Union, List

from pemex.errors import ToolchainNotFoundError

from .utils import Checker, Fixer

STAGE = "Decomposing"

KNOWN_LOCATIONS: List[Path] = [
    Path("/usr/bin/openssl"),
    Path("/usr/local/bin/openssl"),
    Path("/opt/homebrew/bin/openssl"),
    Path("/usr/local/opt/openssl/bin/openssl"),
    Path("C:/Program Files/OpenSSL-Win64/bin/openssl.exe"),
    Path("C:/Program Files/OpenSSL/bin/openssl.exe"),
    Path("C:/Program Files (x86)/OpenSSL-Win32/bin/openssl.exe"),
    Path("C:/Program Files/Git/usr/bin/openssl.exe"),
    Path("C:/Program Files/Git/mingw64/bin/openssl.exe"),
]


def find_toolchain(explicit: Optional[Union[str, Path]] = None,
                   locations: Optional[List[Path]] = None,
                   logger: Optional[Logger] = None) -> Path:
    """
    Resolves the openssl executable

    Parameters
    ----------
    explicit : Union[str, Path], optional
        A path given by the user. If given, it is the only candidate
    locations : List[Path], optional
        Install locations tried after the PATH lookup. KNOWN_LOCATIONS if not given
    logger : Logger, optional
        The logger

    Returns
    -------
    Path :
        The executable
    """
    the_logger = Fixer.logger(logger)
    the_logger.info(f"Resolving the toolchain. param({explicit=})")

    if explicit is not None:
        candidate = Path(explicit)
        if Checker.executable(candidate):
            return candidate

        # A bare name such as "openssl" or "openssl3" is looked up on PATH
        if candidate.name == str(explicit):
            found = shutil.which(str(explicit))
            if found is not None:
                return Path(found)

        the_logger.error(f"Toolchain is not executable: {explicit}")
        raise ToolchainNotFoundError("The given toolchain is not an executable", stage=STAGE, path=candidate)

    found = shutil.which("openssl")
    if found is not None:
        return Path(found)

    for candidate in (KNOWN_LOCATIONS if locations is None else locations):
        if Checker.executable(candidate):
            return candidate

    the_logger.error("openssl not found")
    raise ToolchainNotFoundError("openssl was not found on PATH or in the known install locations", stage=STAGE)
