"""
Where loadouts live and how envtab is configured.

Settings are taken from, in order of precedence: command line options,
environment variables, a YAML config file, and built in defaults.
"""

import logging
import os
import pathlib
import typing

import attr
import yaml

from .loadout import flag
from .utils import EnvtabException

log = logging.getLogger(__name__)

APP_NAME = 'envtab'
HOME_DIRECTORY = '.envtab'
CONFIG_NAME = '.envtab.yaml'

Environ = typing.Mapping[str, str]


def data_directory(
        override: typing.Optional[pathlib.Path] = None,
        environ: Environ = os.environ) -> pathlib.Path:
    """
    Pick the directory loadouts are stored in.

    An explicit directory wins, then $XDG_DATA_HOME/envtab, then ~/.envtab.
    """
    if override:
        return pathlib.Path(override).expanduser()
    if environ.get('XDG_DATA_HOME'):
        return pathlib.Path(environ['XDG_DATA_HOME']).expanduser() / APP_NAME
    return pathlib.Path.home() / HOME_DIRECTORY


def ensure_directory(path: pathlib.Path) -> pathlib.Path:
    if not path.exists():
        log.debug(f"Creating {path}")
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def find_config(
        explicit: typing.Optional[pathlib.Path],
        directory: pathlib.Path) -> typing.Optional[pathlib.Path]:
    if explicit:
        if not explicit.is_file():
            raise EnvtabException(f"Config file {explicit} does not exist")
        return explicit
    for candidate in (directory / CONFIG_NAME, pathlib.Path.home() / CONFIG_NAME):
        if candidate.is_file():
            return candidate
    return None


def read_config(path: typing.Optional[pathlib.Path]) -> typing.Dict[str, typing.Any]:
    if path is None:
        return {}
    log.debug(f"Using config file {path}")
    try:
        document = yaml.safe_load(path.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as error:
        raise EnvtabException(f"Config file {path} is not valid YAML: {error}") from error
    if not isinstance(document, dict):
        raise EnvtabException(f"Config file {path} should contain a mapping")
    return document


def lookup(document: typing.Mapping[str, typing.Any], dotted: str) -> typing.Any:
    value: typing.Any = document
    for part in dotted.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def positive(value: typing.Any) -> typing.Optional[int]:
    if value in (None, ''):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    if number <= 0:
        log.warning(f"Terminal width must be a positive integer, ignoring {value!r}")
        return None
    return number


@attr.s(frozen=True, kw_only=True)
class Config:
    log_level: typing.Optional[str] = attr.ib(default=None)
    sops_binary: str = attr.ib(default='sops')
    sops_verbose: bool = attr.ib(default=False)
    filename_override: typing.Optional[str] = attr.ib(default=None)
    editor: typing.Optional[str] = attr.ib(default=None)
    term_width: typing.Optional[int] = attr.ib(default=None)

    @classmethod
    def load(
            cls,
            path: typing.Optional[pathlib.Path] = None,
            environ: Environ = os.environ) -> 'Config':
        document = read_config(path)
        return cls(
            log_level=environ.get('ENVTAB_LOG_LEVEL') or lookup(document, 'log.level'),
            sops_binary=lookup(document, 'sops.binary') or 'sops',
            sops_verbose=flag(environ.get('SOPS_VERBOSE') or lookup(document, 'sops.verbose')),
            filename_override=(
                environ.get('ENVTAB_SOPS_PATH_REGEX')
                or lookup(document, 'sops.filename_override')),
            editor=environ.get('EDITOR') or lookup(document, 'editor'),
            term_width=positive(environ.get('ENVTAB_TERM_WIDTH') or lookup(document, 'term.width')))

    @property
    def level(self) -> typing.Optional[int]:
        if not self.log_level:
            return None
        level = logging.getLevelName(str(self.log_level).upper())
        if not isinstance(level, int):
            log.warning(f"Unknown log level {self.log_level!r}")
            return None
        return level
