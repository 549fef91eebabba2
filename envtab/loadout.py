import datetime
import logging
import re
import typing

import attr

from . import tags as tagsets
from .formats import VALUE_PREFIX
from .utils import CryptoFailure, DuplicateKey, InvalidKey, NotFound, ToolNotFound, now

if typing.TYPE_CHECKING:
    from .sops import SOPS

log = logging.getLogger(__name__)

Entries = typing.Dict[str, str]


def scalar(value: typing.Any) -> str:
    """Coerce a scalar produced by a YAML/JSON loader back into a string."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return str(value)


def flag(value: typing.Any) -> bool:
    if isinstance(value, bool):
        return value
    return scalar(value).strip().lower() in ('true', 'yes', 'on', '1')


def section(document: typing.Dict[str, typing.Any], key: str) -> typing.Dict[typing.Any, typing.Any]:
    value = document.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"'{key}' should be a mapping, got {type(value).__name__}")
    return value


@attr.s(kw_only=True)
class Metadata:
    created_at: str = attr.ib(factory=now)
    loaded_at: str = attr.ib(factory=now)
    updated_at: str = attr.ib(factory=now)
    login: bool = attr.ib(default=False)
    tags: typing.List[str] = attr.ib(factory=list)
    description: str = attr.ib(default='')

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        return {
            'createdAt': self.created_at,
            'loadedAt': self.loaded_at,
            'updatedAt': self.updated_at,
            'login': self.login,
            'tags': list(self.tags),
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, document: typing.Dict[str, typing.Any]) -> 'Metadata':
        tags = document.get('tags') or []
        if isinstance(tags, str):
            tags = [tags]
        return cls(
            created_at=scalar(document.get('createdAt')),
            loaded_at=scalar(document.get('loadedAt')),
            updated_at=scalar(document.get('updatedAt')),
            login=flag(document.get('login', False)),
            tags=tagsets.remove_duplicate_tags(scalar(t) for t in tags),
            description=scalar(document.get('description')))


@attr.s(kw_only=True)
class Loadout:
    metadata: Metadata = attr.ib(factory=Metadata)
    entries: Entries = attr.ib(factory=dict)

    @classmethod
    def create(cls) -> 'Loadout':
        timestamp = now()
        return cls(metadata=Metadata(
            created_at=timestamp,
            loaded_at=timestamp,
            updated_at=timestamp))

    @classmethod
    def from_dict(cls, document: typing.Any) -> 'Loadout':
        if not isinstance(document, dict):
            raise TypeError(f"expected a mapping, got {type(document).__name__}")

        entries: Entries = {}
        for key, value in section(document, 'entries').items():
            key = scalar(key)
            if not key.strip():
                raise InvalidKey("Loadout contains an empty key in entries")
            entries[key] = scalar(value)

        return cls(
            metadata=Metadata.from_dict(section(document, 'metadata')),
            entries=entries)

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        return {
            'metadata': self.metadata.to_dict(),
            'entries': dict(self.entries),
        }

    def touch(self) -> None:
        self.metadata.updated_at = now()

    def touch_loaded(self) -> None:
        self.metadata.loaded_at = now()

    def set_entry(self, key: str, value: str) -> None:
        log.debug(f"Setting entry {key}")
        if not key or not key.strip():
            raise InvalidKey("Entry keys can't be empty")
        self.entries[key] = value
        self.touch()

    def remove_entry(self, key: str) -> None:
        log.debug(f"Removing entry {key}")
        if key not in self.entries:
            raise NotFound(f"No entry named {key}")
        del self.entries[key]
        self.touch()

    def merge_tags(self, tags: typing.Iterable[str]) -> None:
        self.metadata.tags = tagsets.merge_tags(self.metadata.tags, tags)
        self.touch()

    def replace_tags(self, tags: typing.Iterable[str]) -> None:
        self.metadata.tags = tagsets.remove_duplicate_tags(tags)
        self.touch()

    def remove_tags(self, tags: typing.Iterable[str]) -> None:
        self.metadata.tags = tagsets.remove_tags(self.metadata.tags, tags)
        self.touch()

    def set_description(self, description: str) -> None:
        self.metadata.description = description
        self.touch()

    def set_login(self, login: bool) -> None:
        self.metadata.login = login
        self.touch()

    def encrypted_keys(self) -> typing.List[str]:
        return sorted(k for k, v in self.entries.items() if v.startswith(VALUE_PREFIX))

    def decrypt_values(self, sops: 'SOPS') -> typing.Set[str]:
        """
        Decrypt every value-encrypted entry in place.

        Returns the keys that were encrypted, including those that could
        not be decrypted and were left as ciphertext.
        """
        encrypted = set()
        for key in self.encrypted_keys():
            encrypted.add(key)
            try:
                self.entries[key] = sops.decrypt_value(self.entries[key])
            except (ToolNotFound, CryptoFailure) as error:
                log.warning(f"Keeping {key} encrypted, it could not be decrypted: {error.message}")
        return encrypted

    def encrypt_values(self, sops: 'SOPS', keys: typing.Iterable[str]) -> None:
        """Encrypt the named entries unless they already hold ciphertext."""
        for key in sorted(keys):
            value = self.entries.get(key)
            if value is None or value.startswith(VALUE_PREFIX):
                continue
            log.debug(f"Encrypting value of {key}")
            self.entries[key] = sops.encrypt_value(value)


def structurally_equal(a: Loadout, b: Loadout) -> bool:
    """Compare every metadata field and entry, treating tags as a set."""
    return (
        a.metadata.created_at == b.metadata.created_at
        and a.metadata.loaded_at == b.metadata.loaded_at
        and a.metadata.updated_at == b.metadata.updated_at
        and a.metadata.login == b.metadata.login
        and set(a.metadata.tags) == set(b.metadata.tags)
        and a.metadata.description == b.metadata.description
        and a.entries == b.entries)


KEY_PATTERN = re.compile(r'''^(?P<key>"[^"]*"|'[^']*'|[^\s'"#][^:#]*?)\s*:(?:\s|$)''')


def indentation(line: str) -> int:
    return len(line) - len(line.lstrip(' \t'))


def check_duplicate_entries(text: str) -> None:
    """
    Scan the raw text of a loadout for duplicate keys under 'entries'.

    YAML loaders keep the last of two identical keys without complaint, so
    this has to run before the document is parsed.
    """
    in_entries = False
    child_indent: typing.Optional[int] = None
    seen: typing.Dict[str, int] = {}

    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue

        indent = indentation(line)

        if not in_entries:
            if indent == 0 and stripped.startswith('entries:'):
                # Flow style mappings ('entries: {...}') are left to the parser.
                in_entries = stripped == 'entries:'
            continue

        if indent == 0:
            break

        if child_indent is None:
            child_indent = indent
        if indent != child_indent:
            continue

        match = KEY_PATTERN.match(stripped)
        if not match:
            continue
        key = match.group('key').strip('\'"')
        if key in seen:
            raise DuplicateKey(key, line=number, first=seen[key])
        seen[key] = number


def parse_dotenv(content: str) -> Entries:
    """Parse KEY=VALUE lines, skipping blanks, comments and lines without '='."""
    entries: Entries = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if not key:
            continue
        entries[key] = value.strip()
    return entries
