import logging
import pathlib
import typing

import attr

from . import formats
from .config import ensure_directory
from .loadout import Loadout, check_duplicate_entries, parse_dotenv
from .sops import SOPS
from .utils import (
    CryptoFailure,
    KeyRotation,
    LoadoutExists,
    NotEncrypted,
    NotFound,
    scratch_file,
    write_private,
)

log = logging.getLogger(__name__)

EXTENSION = '.yaml'


def parse_loadout(content: str, name: str = 'loadout') -> Loadout:
    """Unwrap and parse stored or decrypted content into a Loadout."""
    return formats.parse(formats.unwrap(content), Loadout.from_dict, description=name)


def serialize(loadout: Loadout) -> str:
    return formats.dump_yaml(loadout.to_dict())


@attr.s(frozen=True)
class LoadoutStore:
    """
    One YAML file per loadout in a single directory.

    There is no locking: when two processes write the same loadout the
    last writer wins.
    """
    directory: pathlib.Path = attr.ib()
    sops: SOPS = attr.ib(factory=SOPS)

    def path(self, name: str) -> pathlib.Path:
        return self.directory / f"{name}{EXTENSION}"

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def __iter__(self) -> typing.Iterator[str]:
        return iter(self.names())

    def names(self) -> typing.List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p.name[:-len(EXTENSION)] for p in self.directory.glob(f'*{EXTENSION}')
            if p.is_file() and not p.name.startswith('.'))

    def is_file_encrypted(self, name: str) -> bool:
        return self.sops.is_encrypted(self.path(name))

    def raw(self, name: str) -> str:
        path = self.path(name)
        if not path.is_file():
            raise NotFound(f"Loadout {name} does not exist")
        return path.read_text(encoding='utf-8')

    def read(self, name: str) -> Loadout:
        path = self.path(name)
        if not path.is_file():
            raise NotFound(f"Loadout {name} does not exist")

        if self.sops.is_encrypted(path):
            content = self.decrypt(name, path)
        else:
            content = path.read_text(encoding='utf-8')

        return parse_loadout(content, name=f"loadout {name}")

    def decrypt(self, name: str, path: pathlib.Path) -> str:
        try:
            return self.sops.decrypt_file(path)
        except KeyRotation as error:
            raise KeyRotation(
                f"Cannot decrypt loadout {name}: encryption keys may have been rotated. "
                f"Use 'envtab reencrypt {name}' to re-encrypt it with current keys",
                stderr=error.stderr,
                exit_code=error.exit_code) from error
        except NotEncrypted as error:
            log.debug(f"Loadout {name} only looked encrypted, reading it as plaintext: {error.stderr}")
            return path.read_text(encoding='utf-8')
        except CryptoFailure as error:
            raise CryptoFailure(
                f"Failed to decrypt loadout {name}: {error.message}",
                stderr=error.stderr,
                exit_code=error.exit_code) from error

    def write(self, name: str, loadout: Loadout, encrypt_file: bool = False) -> None:
        path = self.path(name)
        data = serialize(loadout)
        ensure_directory(self.directory)

        if not encrypt_file:
            log.debug(f"Writing loadout {name} to {path}")
            write_private(path, data)
            return

        # sops picks creation rules by path, so encrypt alongside the real file.
        with scratch_file(self.directory, prefix=f'.{name}-', contents=data) as scratch:
            encrypted = self.sops.encrypt_file(scratch)
        log.debug(f"Writing encrypted loadout {name} to {path}")
        write_private(path, encrypted)

    def read_or_create(self, name: str) -> Loadout:
        try:
            return self.read(name)
        except NotFound:
            log.debug(f"Creating new loadout {name}")
            return Loadout.create()

    def add_entry(
            self,
            name: str,
            key: str,
            value: str,
            tags: typing.Iterable[str] = (),
            encrypt_value: bool = False,
            encrypt_file: bool = False) -> Loadout:
        """
        Add or replace an entry, keeping the loadout's encryption mode.

        A file-encrypted loadout stays file-encrypted. A loadout with
        encrypted values may be converted to file encryption on request.
        """
        file_encrypted = self.exists(name) and self.is_file_encrypted(name)
        loadout = self.read_or_create(name)

        if file_encrypted:
            if encrypt_value:
                log.warning(f"Loadout {name} is file-encrypted, {key} will be stored inside the encrypted file")
            encrypt_file = True
            encrypt_value = False
        elif encrypt_file and loadout.encrypted_keys():
            log.warning(f"Converting loadout {name} from value encryption to file encryption")

        if encrypt_value:
            # Value scratch files live in the loadout directory.
            ensure_directory(self.directory)
            value = self.sops.encrypt_value(value)

        loadout.set_entry(key, value)
        tags = list(tags)
        if tags:
            loadout.merge_tags(tags)

        self.write(name, loadout, encrypt_file=encrypt_file)
        return loadout

    def save(self, name: str, loadout: Loadout) -> None:
        """Write a loadout back in whatever file mode it is currently stored in."""
        self.write(name, loadout, encrypt_file=self.exists(name) and self.is_file_encrypted(name))

    def rename(self, old: str, new: str) -> None:
        """Rename a loadout. Never overwrites an existing loadout."""
        source, destination = self.path(old), self.path(new)
        if not source.is_file():
            raise NotFound(f"Loadout {old} does not exist")
        if destination.exists():
            raise LoadoutExists(f"Loadout {new} already exists")
        log.debug(f"Renaming {source} to {destination}")
        source.rename(destination)

    def remove(self, name: str) -> None:
        path = self.path(name)
        if not path.is_file():
            raise NotFound(f"Loadout {name} does not exist")
        log.debug(f"Removing {path}")
        path.unlink()

    def reencrypt(self, name: str) -> typing.List[str]:
        """
        Re-encrypt a loadout with the current keys.

        Returns the keys of re-encrypted values.
        """
        if self.is_file_encrypted(name):
            log.info(f"Rotating file encryption for {name}")
            self.sops.rotate_file(self.path(name))

        loadout = self.read(name)
        keys = loadout.encrypted_keys()
        if not keys:
            return []

        for key in keys:
            loadout.entries[key] = self.sops.decrypt_value(loadout.entries[key])
        loadout.encrypt_values(self.sops, keys)
        loadout.touch()
        self.save(name, loadout)
        return keys

    def import_dotenv(self, name: str, content: str) -> Loadout:
        """Merge KEY=VALUE lines into a loadout, overwriting existing keys."""
        loadout = self.read_or_create(name)
        for key, value in parse_dotenv(content).items():
            loadout.set_entry(key, value)
        self.save(name, loadout)
        return loadout

    def import_yaml(self, name: str, content: str) -> Loadout:
        """Replace a loadout with a YAML document."""
        check_duplicate_entries(content)
        loadout = parse_loadout(content, name=f"imported loadout {name}")
        self.write(name, loadout)
        return loadout
