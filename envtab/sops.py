import logging
import pathlib
import shutil
import subprocess
import typing

import attr

from . import formats
from .formats import METADATA_KEY, PAYLOAD_KEY, VALUE_PREFIX
from .utils import (
    CryptoFailure,
    KeyRotation,
    NotEncrypted,
    ToolNotFound,
    scratch_file,
)

log = logging.getLogger(__name__)

KEY_ROTATION_MARKERS = (
    'no decryption key',
    'key not found',
    'access denied',
    'invalidkeyexception',
    'failed to get the data key',
)

NOT_ENCRYPTED_MARKERS = (
    'no sops metadata found',
    'sops metadata not found',
    'not a valid sops file',
)


def mentions(stderr: str, markers: typing.Iterable[str]) -> bool:
    stderr = stderr.lower()
    return any(marker in stderr for marker in markers)


def is_encrypted(path: pathlib.Path) -> bool:
    """
    Check for a top-level 'sops' or 'data' key in a YAML or JSON file.

    Never raises: unreadable or unparseable files are reported as plaintext.
    """
    try:
        content = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as error:
        log.debug(f"Could not read {path} to check for encryption: {error}")
        return False

    keys = formats.top_level_keys(content)
    encrypted = METADATA_KEY in keys or PAYLOAD_KEY in keys
    log.debug(f"Checked {path} for encryption: {encrypted}")
    return encrypted


@attr.s(frozen=True)
class SOPS:
    binary: str = attr.ib(default='sops')
    verbose: bool = attr.ib(default=False)
    filename_override: typing.Optional[str] = attr.ib(default=None)
    directory: typing.Optional[pathlib.Path] = attr.ib(default=None)

    def command(self, arguments: typing.Sequence[str]) -> typing.Tuple[str, ...]:
        command: typing.Tuple[str, ...] = (self.binary,)
        if self.verbose:
            command = (*command, '--verbose')
        return (*command, *arguments)

    def execute(self, command: typing.Sequence[str]) -> subprocess.CompletedProcess:
        """Run the sops binary, without interpreting the result."""
        if shutil.which(command[0]) is None:
            raise ToolNotFound(command[0])
        try:
            return subprocess.run(
                command,
                encoding='utf-8',
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE)
        except FileNotFoundError as error:
            raise ToolNotFound(command[0]) from error

    def run(self, arguments: typing.Sequence[str]) -> str:
        command = self.command(arguments)
        log.debug(f"Running {' '.join(command)}")
        result = self.execute(command)
        if result.returncode == 0:
            return result.stdout

        stderr = (result.stderr or '').strip()
        for line in stderr.splitlines():
            log.debug(line)

        if mentions(stderr, KEY_ROTATION_MARKERS):
            raise KeyRotation(
                "Decryption failed: keys may have been rotated or access was denied. "
                "Re-encrypt with current keys",
                stderr=stderr,
                exit_code=result.returncode)
        if mentions(stderr, NOT_ENCRYPTED_MARKERS):
            raise NotEncrypted(
                f"Input does not look like sops output: {stderr}",
                stderr=stderr,
                exit_code=result.returncode)
        raise CryptoFailure(
            f"sops failed: {stderr or 'no error output'} (exit status {result.returncode})",
            stderr=stderr,
            exit_code=result.returncode)

    def options(self) -> typing.List[str]:
        if self.filename_override:
            return ['--filename-override', self.filename_override]
        return []

    def is_encrypted(self, path: pathlib.Path) -> bool:
        return is_encrypted(path)

    def encrypt_file(self, path: pathlib.Path) -> str:
        log.debug(f"Encrypting {path}")
        return self.run([*self.options(), '--encrypt', str(path)])

    def decrypt_file(self, path: pathlib.Path) -> str:
        log.debug(f"Decrypting {path}")
        return self.run([*self.options(), '--decrypt', str(path)])

    def rotate_file(self, path: pathlib.Path) -> None:
        """Re-encrypt a file in place with the current keys."""
        log.debug(f"Rotating keys for {path}")
        self.run(['--rotate', '--in-place', str(path)])

    def encrypt_value(self, value: str) -> str:
        document = formats.dump_yaml({'value': value})
        with scratch_file(self.directory, prefix='.envtab-value-', contents=document) as path:
            encrypted = self.encrypt_file(path)
        return VALUE_PREFIX + encrypted

    def decrypt_value(self, value: str) -> str:
        ciphertext = value[len(VALUE_PREFIX):] if value.startswith(VALUE_PREFIX) else value
        if not ciphertext.strip():
            raise CryptoFailure("Encrypted value is empty")

        with scratch_file(self.directory, prefix='.envtab-value-', contents=ciphertext) as path:
            decrypted = self.decrypt_file(path)
        return extract_value(decrypted)


def extract_value(document: str) -> str:
    """
    Read the 'value' field from a decrypted single value document.

    Falls back to scanning lines when the document doesn't parse.
    """
    try:
        parsed = formats.YAML.load(document)
    except formats.PARSE_ERRORS as error:
        log.debug(f"Decrypted value is not valid YAML, scanning lines instead: {error}")
    else:
        if isinstance(parsed, dict) and 'value' in parsed:
            return '' if parsed['value'] is None else str(parsed['value'])

    for line in document.splitlines():
        line = line.strip()
        if line.startswith('value:'):
            return line[len('value:'):].strip().strip('\'"')

    raise CryptoFailure("Could not find a value in the decrypted document")
