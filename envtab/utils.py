import contextlib
import datetime
import logging
import os
import pathlib
import tempfile
import typing

import click

log = logging.getLogger(__name__)

SOPS_INSTALL_URL = 'https://github.com/getsops/sops'


class EnvtabException(click.ClickException):
    pass


class NotFound(EnvtabException):
    pass


class LoadoutExists(EnvtabException):
    pass


class InvalidKey(EnvtabException):
    pass


class UnparseableLoadout(EnvtabException):
    pass


class DuplicateKey(EnvtabException):
    def __init__(self, key: str, line: int, first: int):
        super().__init__(
            f"Duplicate key '{key}' in entries at line {line} "
            f"(first seen at line {first})")
        self.key = key
        self.line = line
        self.first = first


class OperatorAborted(EnvtabException):
    pass


class ToolNotFound(EnvtabException):
    def __init__(self, binary: str = 'sops'):
        super().__init__(
            f"{binary} is not installed or not on $PATH. "
            f"Install SOPS to work with encrypted loadouts: {SOPS_INSTALL_URL}")
        self.binary = binary


class CryptoFailure(EnvtabException):
    def __init__(
            self,
            message: str,
            stderr: str = '',
            exit_code: typing.Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class KeyRotation(CryptoFailure):
    """The current keys can't decrypt the existing ciphertext."""


class NotEncrypted(CryptoFailure):
    """The input only looked like sops output."""


def now() -> str:
    """The current local time as an ISO-8601 string with a UTC offset."""
    return datetime.datetime.now().astimezone().replace(microsecond=0).isoformat()


def write_private(path: pathlib.Path, data: typing.Union[str, bytes]) -> None:
    """Write a file that only the owning user can read."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        os.fchmod(f.fileno(), 0o600)
        f.write(data)


@contextlib.contextmanager
def scratch_file(
        directory: typing.Optional[pathlib.Path] = None,
        prefix: str = '.envtab-',
        suffix: str = '.yaml',
        contents: typing.Union[str, bytes, None] = None) -> typing.Iterator[pathlib.Path]:
    """
    Create a uniquely named 0600 file and remove it on every exit path.
    """
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    os.close(fd)
    path = pathlib.Path(name)
    try:
        if contents is not None:
            write_private(path, contents)
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
        log.debug(f"Removed scratch file {path}")
