"""
Show which loadout entries are active in the current environment.

Each loadout is read and decrypted on its own worker thread. Workers put
their formatted lines on a shared queue, which is drained once every
worker has finished, so output is grouped per loadout but not ordered.
"""

import concurrent.futures
import fnmatch
import logging
import queue
import typing

import attr
import click

from .exporter import is_reference, reference, segments
from .formats import VALUE_PREFIX
from .sops import SOPS
from .store import LoadoutStore
from .utils import CryptoFailure, EnvtabException, ToolNotFound

log = logging.getLogger(__name__)

PADDING = '   '
#: Spaces and brackets around the '[ total / matched ]' counter.
COUNTER_WIDTH = 10


@attr.s(frozen=True, kw_only=True)
class Selection:
    patterns: typing.Sequence[str] = attr.ib(default=())
    show_all: bool = attr.ib(default=False)
    key: typing.Optional[str] = attr.ib(default=None)
    value: typing.Optional[str] = attr.ib(default=None)
    decrypt: bool = attr.ib(default=False)

    def wants(self, name: str) -> bool:
        if not self.patterns:
            return True
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.patterns)


def is_active(environ: typing.Mapping[str, str], key: str, value: str) -> bool:
    if is_reference(key, value):
        wanted = segments(reference(key).sub('', value))
        live = segments(environ.get(key, ''))
        return bool(wanted) and all(segment in live for segment in wanted)
    return environ.get(key) == value


def reveal(sops: SOPS, key: str, value: str) -> str:
    if not value.startswith(VALUE_PREFIX):
        return value
    try:
        return sops.decrypt_value(value)
    except (ToolNotFound, CryptoFailure) as error:
        log.debug(f"Could not decrypt {key}: {error.message}")
        return value


def show_loadout(
        store: LoadoutStore,
        name: str,
        environ: typing.Mapping[str, str],
        selection: Selection,
        width: int = 80) -> typing.List[str]:
    try:
        loadout = store.read(name)
    except ToolNotFound:
        log.warning(f"Skipping loadout {name}, sops is not installed")
        return []
    except EnvtabException as error:
        log.error(f"Failed to read loadout {name}: {error.message}")
        return []

    matched: typing.List[str] = []
    active = 0
    for key in sorted(loadout.entries):
        raw = loadout.entries[key]
        plain = reveal(store.sops, key, raw)

        if selection.key is not None:
            selected = key == selection.key
        elif selection.value is not None:
            selected = plain == selection.value
        else:
            selected = is_active(environ, key, plain)
        active += selected

        if selected or selection.show_all:
            matched.append(f"{key}={plain if selection.decrypt else raw}")

    if not matched:
        return []

    total = len(loadout.entries)
    count_colour = 'blue' if active == total else 'red'
    dashes = max(width - len(name) - len(str(total)) - len(str(active)) - COUNTER_WIDTH, 1)
    header = (
        f"{click.style(name, fg='green')} "
        f"{click.style('-' * dashes, fg='bright_black')} "
        f"[ {click.style(str(total), fg=count_colour)} / {click.style(str(active), fg=count_colour)} ]")
    return [header, *(PADDING + click.style(entry, fg='bright_white') for entry in matched)]


def show(
        store: LoadoutStore,
        environ: typing.Mapping[str, str],
        selection: Selection,
        width: int = 80) -> typing.List[str]:
    names = [name for name in store.names() if selection.wants(name)]
    results: 'queue.Queue[typing.List[str]]' = queue.Queue()

    def worker(name: str) -> None:
        results.put(show_loadout(store, name, environ, selection, width))

    log.debug(f"Showing {len(names)} loadouts")
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(len(names), 1)) as pool:
        for future in [pool.submit(worker, name) for name in names]:
            future.result()

    lines: typing.List[str] = []
    while not results.empty():
        lines.extend(results.get_nowait())
    return lines
