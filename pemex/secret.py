from contextlib import contextmanager
from typing import Iterator, Union

from pydantic import SecretStr

from pemex.errors import EmptySecretError, SecretReleasedError, ValidationException


class SecretHandle:
    """
    Holds the export password in a mutable buffer that can be zeroed.

    The plaintext is only handed out through ``exposed()`` and the buffer it yields is wiped when the
    ``with`` block ends. ``release()`` wipes the underlying buffer. A ``bytearray`` given to the constructor is
    adopted, not copied, so releasing the handle wipes the caller's buffer as well.

    Python ``str`` and ``bytes`` objects are immutable. Any copy made from them (the constructor argument, or a
    ``bytes`` copy a library insists on) can not be wiped and lives until it is garbage collected.
    """

    def __init__(self, password: Union[str, bytes, bytearray, SecretStr, None]) -> None:
        if password is None:
            raise EmptySecretError("The export password is empty")

        if isinstance(password, SecretStr):
            password = password.get_secret_value()

        if isinstance(password, bytearray):
            buffer = password
        elif isinstance(password, str):
            buffer = bytearray(password.encode("utf-8"))
        elif isinstance(password, bytes):
            buffer = bytearray(password)
        else:
            raise TypeError(f"Unsupported password type: {type(password).__name__}")

        if not buffer:
            raise EmptySecretError("The export password is empty")

        if b"\n" in buffer or b"\r" in buffer:
            self._wipe(buffer)
            raise ValidationException("The export password must not contain line breaks")

        self._buffer = buffer
        self._released = False

    @staticmethod
    def _wipe(buffer: bytearray) -> None:
        buffer[:] = bytes(len(buffer))

    @property
    def released(self) -> bool:
        return self._released

    @contextmanager
    def exposed(self, suffix: bytes = b"") -> Iterator[bytearray]:
        """
        Yields a transient plaintext copy of the secret, wiped on exit

        Parameters
        ----------
        suffix : bytes
            Appended to the copy. Used to terminate the line written to a child's stdin

        Returns
        -------
        Iterator[bytearray] :
            The plaintext view
        """
        if self._released:
            raise SecretReleasedError("The export password was already released")

        view = bytearray(self._buffer)
        view.extend(suffix)
        try:
            yield view
        finally:
            self._wipe(view)

    def release(self) -> None:
        """Wipes the secret. Calling it more than once is harmless"""
        if not self._released:
            self._wipe(self._buffer)
            self._released = True

    def __enter__(self) -> "SecretHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"SecretHandle(released={self._released})"
