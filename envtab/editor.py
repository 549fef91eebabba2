"""
Interactive editing of a stored loadout.

The loadout is decrypted into a scratch file, opened in $EDITOR, and
validated when the editor exits. Invalid files send the user back to the
editor until they fix them or give up. Nothing is written unless the
loadout actually changed, and both file and value encryption are
restored on save.
"""

import enum
import logging
import pathlib
import typing

import attr
import click

from . import formats
from .loadout import Loadout, check_duplicate_entries, structurally_equal
from .store import LoadoutStore, serialize
from .utils import (
    DuplicateKey,
    InvalidKey,
    OperatorAborted,
    UnparseableLoadout,
    scratch_file,
)

log = logging.getLogger(__name__)

Launcher = typing.Callable[[typing.Optional[str], pathlib.Path], None]
Prompt = typing.Callable[[str], bool]


class Outcome(enum.Enum):
    UNCHANGED = 'unchanged'
    WRITTEN = 'written'


def launch_editor(editor: typing.Optional[str], path: pathlib.Path) -> None:
    """
    Open a file in the editor, in place.

    Without an editor click picks one from $VISUAL, $EDITOR or the system.
    The editor's exit status is ignored.
    """
    try:
        click.edit(filename=str(path), editor=editor)
    except click.ClickException as error:
        log.debug(f"Editor failed: {error.message}")


def confirm(question: str) -> bool:
    return click.confirm(question, default=True, err=True)


@attr.s(frozen=True)
class Reconciler:
    store: LoadoutStore = attr.ib()
    editor: typing.Optional[str] = attr.ib(default=None)
    launch: Launcher = attr.ib(default=launch_editor)
    prompt: Prompt = attr.ib(default=confirm)

    def edit(self, name: str) -> Outcome:
        file_encrypted = self.store.exists(name) and self.store.is_file_encrypted(name)
        original = self.store.read(name)
        encrypted_keys = original.decrypt_values(self.store.sops)

        created_at = original.metadata.created_at
        loaded_at = original.metadata.loaded_at

        with scratch_file(
                self.store.directory,
                prefix=f'.{name}-edit-',
                contents=serialize(original)) as path:
            edited = self.edit_until_valid(name, path)

        edited.metadata.created_at = created_at
        edited.metadata.loaded_at = loaded_at

        if structurally_equal(original, edited):
            log.info(f"No changes made to {name}")
            return Outcome.UNCHANGED

        edited.touch()
        edited.encrypt_values(self.store.sops, encrypted_keys)
        self.store.write(name, edited, encrypt_file=file_encrypted)
        log.info(f"Saved changes to {name}")
        return Outcome.WRITTEN

    def edit_until_valid(self, name: str, path: pathlib.Path) -> Loadout:
        while True:
            self.launch(self.editor, path)
            text = path.read_text(encoding='utf-8')

            try:
                check_duplicate_entries(text)
                return formats.parse(text, Loadout.from_dict, description=f"edited loadout {name}")
            except DuplicateKey as error:
                log.error(error.message)
                question = "The file contains duplicate keys. Continue editing to fix them?"
            except (UnparseableLoadout, InvalidKey) as error:
                log.error(error.message)
                question = "The file could not be parsed. Continue editing to fix it?"

            if not self.prompt(question):
                raise OperatorAborted(f"Discarded changes to {name}")
