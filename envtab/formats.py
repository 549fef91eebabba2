"""
Loadouts are stored as YAML, but sops may hand them back as JSON or
wrapped in a top-level 'data' key. Parsing walks an ordered chain of
formats and stops at the first one that produces a usable document.
"""

import json
import logging
import typing

import attr
import yaml

from .utils import UnparseableLoadout

log = logging.getLogger(__name__)

PAYLOAD_KEY = 'data'
METADATA_KEY = 'sops'

#: Marks an entry value that was encrypted on its own.
VALUE_PREFIX = 'SOPS:'

T = typing.TypeVar('T')

PARSE_ERRORS = (yaml.YAMLError, ValueError, TypeError, AttributeError)


def dump_yaml(document: typing.Any) -> str:
    return yaml.safe_dump(
        document,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True)


def dump_json(document: typing.Any) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False) + '\n'


@attr.s(frozen=True)
class Format:
    name: str = attr.ib()
    load: typing.Callable[[str], typing.Any] = attr.ib(repr=False)
    dump: typing.Callable[[typing.Any], str] = attr.ib(repr=False)


YAML = Format('yaml', yaml.safe_load, dump_yaml)
JSON = Format('json', json.loads, dump_json)


@attr.s(frozen=True)
class Attempt(typing.Generic[T]):
    format: Format = attr.ib()
    value: typing.Optional[T] = attr.ib(default=None)
    error: typing.Optional[Exception] = attr.ib(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt(
        fmt: Format,
        content: str,
        convert: typing.Callable[[typing.Any], T]) -> 'Attempt[T]':
    try:
        return Attempt(fmt, value=convert(fmt.load(content)))
    except PARSE_ERRORS as error:
        log.debug(f"Content is not a valid {fmt.name} document: {error}")
        return Attempt(fmt, error=error)


def mapping(document: typing.Any) -> typing.Dict[str, typing.Any]:
    if not isinstance(document, dict):
        raise TypeError(f"expected a mapping, got {type(document).__name__}")
    return document


def unwrap_payload(fmt: Format, document: typing.Dict[str, typing.Any]) -> typing.Optional[str]:
    """Extract the document sops wrapped in a top-level 'data' key."""
    if PAYLOAD_KEY not in document:
        return None
    payload = document[PAYLOAD_KEY]
    if isinstance(payload, str):
        return payload
    return fmt.dump(payload)


Rule = typing.Callable[[Format, typing.Dict[str, typing.Any]], typing.Optional[str]]

#: Tried in order: the first format that parses decides the unwrap result.
CHAIN: typing.Sequence[typing.Tuple[Format, Rule]] = (
    (YAML, unwrap_payload),
    (JSON, unwrap_payload),
)


def unwrap(content: str) -> str:
    for fmt, rule in CHAIN:
        result = attempt(fmt, content, mapping)
        if not result.ok:
            continue
        unwrapped = rule(fmt, result.value)
        if unwrapped is not None:
            log.debug(f"Unwrapped '{PAYLOAD_KEY}' payload from {fmt.name} document")
            return unwrapped
        return content
    return content


def parse(
        content: str,
        convert: typing.Callable[[typing.Any], T],
        description: str = 'loadout') -> T:
    attempts = []
    for fmt, _ in CHAIN:
        result = attempt(fmt, content, convert)
        if result.ok:
            return typing.cast(T, result.value)
        attempts.append(result)
    reasons = '; '.join(f"{a.format.name}: {a.error}" for a in attempts)
    raise UnparseableLoadout(f"Failed to parse {description} ({reasons})")


def top_level_keys(content: str) -> typing.FrozenSet[str]:
    """Return the top-level keys of a document, or nothing if it doesn't parse."""
    for fmt, _ in CHAIN:
        result = attempt(fmt, content, mapping)
        if result.ok:
            return frozenset(str(key) for key in result.value)
    return frozenset()
