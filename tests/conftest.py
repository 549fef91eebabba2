import base64
import pathlib
import subprocess
import typing

import attr
import click.testing
import pytest
import yaml

import envtab.cli
from envtab.sops import SOPS
from envtab.store import LoadoutStore
from envtab.utils import ToolNotFound


@attr.s(frozen=True)
class FakeSOPS(SOPS):
    """
    Stands in for the sops binary.

    'Encryption' base64 encodes the file into a 'data' key next to a 'sops'
    metadata block, which is enough for detection and round trips.
    """
    installed: bool = attr.ib(default=True)
    failures: typing.Mapping[str, str] = attr.ib(factory=dict)
    calls: typing.List[typing.Tuple[str, ...]] = attr.ib(factory=list, eq=False)

    def execute(self, command: typing.Sequence[str]) -> subprocess.CompletedProcess:
        if not self.installed:
            raise ToolNotFound(command[0])
        self.calls.append(tuple(command))

        arguments = [a for a in command[1:] if a != '--verbose']
        if arguments[0] == '--filename-override':
            arguments = arguments[2:]
        mode, path = arguments[0], pathlib.Path(arguments[-1])

        if mode in self.failures:
            return subprocess.CompletedProcess(command, 128, '', self.failures[mode])

        content = path.read_text(encoding='utf-8')
        if mode == '--encrypt':
            encoded = base64.b64encode(content.encode('utf-8')).decode('ascii')
            output = yaml.safe_dump({'data': encoded, 'sops': {'version': 'fake'}})
            return subprocess.CompletedProcess(command, 0, output, '')
        if mode == '--decrypt':
            document = yaml.safe_load(content)
            if not isinstance(document, dict) or 'sops' not in document:
                return subprocess.CompletedProcess(
                    command, 128, '', 'Error: sops metadata not found')
            output = base64.b64decode(document['data']).decode('utf-8')
            return subprocess.CompletedProcess(command, 0, output, '')
        if mode == '--rotate':
            return subprocess.CompletedProcess(command, 0, '', '')
        raise AssertionError(f"Unexpected sops arguments {command}")

    def modes(self) -> typing.List[str]:
        return [next(a for a in call[1:] if a.startswith('--') and a != '--verbose') for call in self.calls]


@pytest.fixture()
def directory(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / 'envtab'
    path.mkdir()
    return path


@pytest.fixture()
def sops(tmp_path: pathlib.Path) -> FakeSOPS:
    scratch = tmp_path / 'scratch'
    scratch.mkdir()
    return FakeSOPS(directory=scratch)


@pytest.fixture()
def store(directory: pathlib.Path, sops: FakeSOPS) -> LoadoutStore:
    return LoadoutStore(directory, sops)


@pytest.fixture(params=[False, True], ids=['plaintext', 'file-encrypted'])
def file_encrypted(request) -> bool:
    return request.param


@pytest.fixture()
def invoke(directory, sops, monkeypatch):
    monkeypatch.setattr(envtab.cli, 'SOPS', lambda **kwargs: sops)

    def invoke_func(arguments: typing.Sequence[str], exit_code: int = 0):
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        result = runner.invoke(envtab.cli.main, ['-p', str(directory), *arguments])
        if result.exit_code != exit_code:
            message = f"Command envtab {' '.join(arguments)} exited with {result.exit_code}"
            raise Exception(message) from result.exception
        return result.output.splitlines()

    return invoke_func
