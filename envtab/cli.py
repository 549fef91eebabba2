import logging
import os
import pathlib
import shutil
import typing
import urllib.parse

import attr
import click
import requests

from . import __doc__, __version__
from .config import Config, data_directory, find_config
from .editor import Outcome, Reconciler
from .exporter import Exporter
from .show import Selection, show as show_entries
from .sops import SOPS
from .store import LoadoutStore, serialize
from .tags import clean_tags
from .templates import Templates
from .utils import (
    EnvtabException,
    LoadoutExists,
    NotFound,
    OperatorAborted,
    ToolNotFound,
    write_private,
)

log = logging.getLogger(__name__)


def styled(name: str) -> str:
    """Style a loadout name."""
    return click.style(name, fg='green')


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


@attr.s(frozen=True)
class Session:
    store: LoadoutStore = attr.ib()
    config: Config = attr.ib(factory=Config)

    @property
    def sops(self) -> SOPS:
        return self.store.sops

    def reconciler(self) -> Reconciler:
        return Reconciler(self.store, editor=self.config.editor)

    def exporter(self) -> Exporter:
        return Exporter(self.sops)

    def templates(self) -> Templates:
        return Templates.load(self.store.directory / 'templates')

    def width(self) -> int:
        return self.config.term_width or shutil.get_terminal_size((80, 24)).columns

    def interactive_edit(self, name: str) -> None:
        try:
            outcome = self.reconciler().edit(name)
        except OperatorAborted as error:
            click.echo(error.message, err=True)
            return
        if outcome is Outcome.UNCHANGED:
            click.echo(f"No changes made to {styled(name)}", err=True)
        else:
            click.echo(f"Saved {styled(name)}", err=True)


loadout_argument = click.argument('name', type=click.STRING, required=True)

loadouts_argument = click.argument(
    'names',
    type=click.STRING,
    required=True,
    nargs=-1)


@click.group(help=__doc__)
@click.option(
    '-p', '--directory',
    type=PathType(file_okay=False, dir_okay=True),
    envvar='ENVTAB_DIR',
    default=None,
    help="Directory loadouts are stored in. Defaults to $XDG_DATA_HOME/envtab or ~/.envtab.")
@click.option(
    '-c', '--config', 'config_path',
    type=PathType(dir_okay=False),
    envvar='ENVTAB_CONFIG',
    default=None,
    help="YAML config file. Defaults to .envtab.yaml in the loadout directory or your home.")
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.option(
    '-v', '--verbose', 'sops_verbose',
    default=False,
    is_flag=True,
    help="Run sops with --verbose.")
@click.pass_context
def main(
        ctx,
        directory: typing.Optional[pathlib.Path],
        config_path: typing.Optional[pathlib.Path],
        debug: bool,
        sops_verbose: bool):
    directory = data_directory(directory)
    config = Config.load(find_config(config_path, directory))
    logging.basicConfig(level=(logging.DEBUG if debug else config.level or logging.WARNING))
    log.debug(f"Using loadouts in {directory}")

    sops = SOPS(
        binary=config.sops_binary,
        verbose=sops_verbose or config.sops_verbose,
        filename_override=config.filename_override,
        directory=directory)
    ctx.obj = Session(LoadoutStore(directory, sops), config)


@main.command()
def version():
    """Show the application version."""
    click.echo(f"envtab {__version__}")


@main.command(name='ls')
@click.pass_obj
def ls(session: Session):
    """List all loadouts with their description and tags."""
    for name in session.store:
        try:
            loadout = session.store.read(name)
        except EnvtabException as error:
            log.warning(f"Could not read {name}: {error.message}")
            click.echo(styled(name))
            continue
        tags = ' '.join(sorted(loadout.metadata.tags))
        login = click.style(' [login]', fg='yellow') if loadout.metadata.login else ''
        click.echo(
            f"{styled(name)}{login} {loadout.metadata.description} "
            f"{click.style(tags, fg='blue')}".rstrip())


@main.command()
@loadout_argument
@click.argument('arguments', nargs=-1, required=True)
@click.option(
    '-e', '--encrypt-value',
    default=False,
    is_flag=True,
    help="Encrypt the value with sops.")
@click.option(
    '-f', '--encrypt-file',
    default=False,
    is_flag=True,
    help="Encrypt the whole loadout file with sops.")
@click.pass_obj
def add(
        session: Session,
        name: str,
        arguments: typing.Sequence[str],
        encrypt_value: bool,
        encrypt_file: bool):
    """
    Add an entry to a loadout.

    Entries are given as KEY=VALUE or KEY VALUE, followed by any number of
    tags separated by spaces or commas.

    \b
        $ envtab add aws AWS_REGION=eu-west-2 cloud,aws
        $ envtab add -e aws AWS_SECRET_ACCESS_KEY=...
    """
    first, rest = arguments[0], list(arguments[1:])
    if '=' in first:
        key, value = first.split('=', 1)
    elif rest:
        key, value = first, rest.pop(0)
    else:
        raise click.UsageError("Provide an entry as KEY=VALUE or KEY VALUE")

    log.debug(f"Adding {key} to {name}")
    session.store.add_entry(
        name, key, value,
        tags=clean_tags(rest),
        encrypt_value=encrypt_value,
        encrypt_file=encrypt_file)


@main.command()
@loadouts_argument
@click.option(
    '--decrypt', '-d',
    default=False,
    is_flag=True,
    help="Decrypt file and value encryption.")
@click.option(
    '--output', '-o',
    type=PathType(dir_okay=False),
    default=None,
    help="Write a single loadout to a file instead of stdout.")
@click.pass_obj
def cat(
        session: Session,
        names: typing.Sequence[str],
        decrypt: bool,
        output: typing.Optional[pathlib.Path]):
    """Print loadouts, encrypted unless --decrypt is given."""
    if output and len(names) != 1:
        raise click.UsageError("--output takes exactly one loadout")

    for name in names:
        if session.store.is_file_encrypted(name) and not decrypt:
            text = session.store.raw(name)
        else:
            loadout = session.store.read(name)
            if decrypt:
                loadout.decrypt_values(session.sops)
            text = serialize(loadout)

        if output:
            output.parent.mkdir(parents=True, exist_ok=True)
            write_private(output, text)
            click.echo(f"Wrote {styled(name)} to {output}", err=True)
        else:
            click.echo(text, nl=False)


@main.command()
@loadout_argument
@click.option('-n', '--name', 'new_name', default=None, help="Rename the loadout.")
@click.option('-D', '--description', default=None, help="Set the description.")
@click.option('--add-tags', default=None, help="Add tags, separated by spaces or commas.")
@click.option('--remove-tags', default=None, help="Remove tags, separated by spaces or commas.")
@click.option('--remove-entry', 'remove_entries', multiple=True, help="Remove an entry.")
@click.option('--login/--no-login', '-l/-L', default=None, help="Export the loadout on login.")
@click.pass_obj
def edit(
        session: Session,
        name: str,
        new_name: typing.Optional[str],
        description: typing.Optional[str],
        add_tags: typing.Optional[str],
        remove_tags: typing.Optional[str],
        remove_entries: typing.Sequence[str],
        login: typing.Optional[bool]):
    """
    Edit a loadout.

    Without options the loadout is opened in $EDITOR with encrypted values
    decrypted, and encrypted again when it is saved.
    """
    store = session.store

    if new_name:
        store.rename(name, new_name)
        click.echo(f"Renamed {styled(name)} to {styled(new_name)}", err=True)
        name = new_name

    changes = (description, add_tags, remove_tags, login)
    if all(change is None for change in changes) and not remove_entries:
        if not new_name:
            session.interactive_edit(name)
        return

    loadout = store.read(name)
    if description is not None:
        loadout.set_description(description)
    if add_tags:
        loadout.merge_tags(clean_tags([add_tags]))
    if remove_tags:
        loadout.remove_tags(clean_tags([remove_tags]))
    if login is not None:
        loadout.set_login(login)
    for key in remove_entries:
        loadout.remove_entry(key)
    store.save(name, loadout)


@main.command()
@loadouts_argument
@click.pass_obj
def export(session: Session, names: typing.Sequence[str]):
    """
    Print export statements for loadouts.

    \b
        $ eval "$(envtab export aws)"
    """
    exporter = session.exporter()
    for name in names:
        try:
            loadout = session.store.read(name)
        except ToolNotFound as error:
            click.echo(f"Skipping loadout {name}: {error.message}", err=True)
            continue
        for line in exporter.export(loadout, name=name):
            click.echo(line)


@main.command()
@click.pass_obj
def login(session: Session):
    """Print export statements for every loadout enabled on login."""
    exporter = session.exporter()
    for name in session.store:
        try:
            loadout = session.store.read(name)
        except ToolNotFound as error:
            click.echo(f"Skipping loadout {name}: {error.message}", err=True)
            continue
        if not loadout.metadata.login:
            log.debug(f"Loadout {name} is not enabled on login")
            continue
        for line in exporter.export(loadout, name=name):
            click.echo(line)


def fetch(url: str) -> str:
    """Download a file to import over HTTP(S)."""
    log.debug(f"Fetching {url}")
    try:
        response = requests.get(url, timeout=30)
        response.raise_for_status()
    except requests.RequestException as error:
        raise EnvtabException(f"Failed to fetch {url}: {error}") from error
    return response.text


def import_content(store: LoadoutStore, name: str, source: str, suffix: str, content: str) -> None:
    if suffix == '.env':
        store.import_dotenv(name, content)
    elif suffix in ('.yaml', '.yml'):
        store.import_yaml(name, content)
    else:
        raise EnvtabException(f"Can't import {source}, expected a .env, .yaml or .yml file")
    click.echo(f"Imported {source} into {styled(name)}", err=True)


@main.command(name='import')
@loadout_argument
@click.argument('path', type=PathType(exists=True, dir_okay=False), required=False)
@click.option(
    '-u', '--url',
    default=None,
    help="Import from an HTTP(S) URL instead of a local file.")
@click.pass_obj
def import_(session: Session, name: str, path: typing.Optional[pathlib.Path], url: typing.Optional[str]):
    """
    Import a .env file (merged) or a YAML loadout (replaced).

    \b
        $ envtab import local ./config.env
        $ envtab import prod --url https://example.com/loadouts/prod.yaml
    """
    if (path is None) == (url is None):
        raise click.UsageError("Provide either a PATH or --url")

    if url:
        suffix = pathlib.PurePosixPath(urllib.parse.urlparse(url).path).suffix
        import_content(session.store, name, url, suffix, fetch(url))
    else:
        import_content(session.store, name, str(path), path.suffix, path.read_text(encoding='utf-8'))


@main.command()
@loadout_argument
@click.argument('template', type=click.STRING, required=True)
@click.option(
    '--force/--no-force',
    default=False,
    help="Overwrite an existing loadout.")
@click.pass_obj
def make(session: Session, name: str, template: str, force: bool):
    """Create a loadout from a template and open it in $EDITOR."""
    if session.store.exists(name) and not force:
        raise LoadoutExists(f"Loadout {name} already exists, use --force to overwrite it")

    session.store.write(name, session.templates()[template].loadout())
    click.echo(f"Created {styled(name)} from template {template}", err=True)
    session.interactive_edit(name)


@main.command()
@loadouts_argument
@click.pass_obj
def rm(session: Session, names: typing.Sequence[str]):
    """Delete loadouts."""
    for name in names:
        session.store.remove(name)
        click.echo(f"Removed {styled(name)}", err=True)


@main.command()
@loadout_argument
@click.pass_obj
def reencrypt(session: Session, name: str):
    """Re-encrypt a loadout and its encrypted values with the current keys."""
    if not session.store.exists(name):
        raise NotFound(f"Loadout {name} does not exist")
    keys = session.store.reencrypt(name)
    click.echo(f"Re-encrypted {styled(name)} ({len(keys)} encrypted values)", err=True)


@main.command()
@click.argument('patterns', nargs=-1)
@click.option('-a', '--all', 'show_all', default=False, is_flag=True, help="Show all entries.")
@click.option('-k', '--key', default=None, help="Show entries with this key.")
@click.option('-V', '--value', default=None, help="Show entries with this value.")
@click.option(
    '-d', '--decrypt',
    default=False,
    is_flag=True,
    help="Show encrypted values in plaintext.")
@click.pass_obj
def show(
        session: Session,
        patterns: typing.Sequence[str],
        show_all: bool,
        key: typing.Optional[str],
        value: typing.Optional[str],
        decrypt: bool):
    """Show loadouts with entries active in the current environment."""
    if sum((show_all, key is not None, value is not None)) > 1:
        raise click.UsageError("--all, --key and --value are mutually exclusive")

    selection = Selection(
        patterns=patterns,
        show_all=show_all,
        key=key,
        value=value,
        decrypt=decrypt)
    for line in show_entries(session.store, dict(os.environ), selection, width=session.width()):
        click.echo(line)
