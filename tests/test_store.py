import stat

import attr
import pytest
import yaml

from envtab.loadout import Loadout
from envtab.store import LoadoutStore
from envtab.utils import (
    CryptoFailure,
    DuplicateKey,
    KeyRotation,
    LoadoutExists,
    NotFound,
    ToolNotFound,
)


def stored(store: LoadoutStore, name: str):
    return yaml.safe_load(store.path(name).read_text())


def test_write_and_read(store, file_encrypted):
    loadout = Loadout.create()
    loadout.set_entry('KEY', 'value')
    loadout.merge_tags(['a', 'b'])
    store.write('test', loadout, encrypt_file=file_encrypted)

    assert store.is_file_encrypted('test') is file_encrypted
    assert store.read('test') == loadout


def test_write_is_private(store, file_encrypted):
    store.write('test', Loadout.create(), encrypt_file=file_encrypted)
    assert stat.S_IMODE(store.path('test').stat().st_mode) == 0o600


def test_write_leaves_no_scratch_files(store, file_encrypted):
    store.write('test', Loadout.create(), encrypt_file=file_encrypted)
    assert [p.name for p in store.directory.iterdir()] == ['test.yaml']


def test_stored_format(store):
    loadout = Loadout.create()
    loadout.set_entry('KEY', 'value')
    store.write('test', loadout)

    document = stored(store, 'test')
    assert list(document) == ['metadata', 'entries']
    assert list(document['metadata']) == ['createdAt', 'loadedAt', 'updatedAt', 'login', 'tags', 'description']
    assert document['entries'] == {'KEY': 'value'}


def test_read_missing(store):
    with pytest.raises(NotFound):
        store.read('missing')


def test_failed_encryption_leaves_file_unchanged(store, sops):
    store.write('test', Loadout.create(), encrypt_file=True)
    before = store.path('test').read_text()

    failing = LoadoutStore(store.directory, attr.evolve(sops, failures={'--encrypt': 'could not encrypt'}))
    with pytest.raises(CryptoFailure):
        failing.write('test', Loadout.create(), encrypt_file=True)

    assert store.path('test').read_text() == before
    assert [p.name for p in store.directory.iterdir()] == ['test.yaml']


def test_read_with_rotated_keys(store, sops):
    store.write('test', Loadout.create(), encrypt_file=True)
    failing = LoadoutStore(store.directory, attr.evolve(
        sops, failures={'--decrypt': 'Failed to get the data key required to decrypt the SOPS file.'}))

    with pytest.raises(KeyRotation) as info:
        failing.read('test')
    assert "envtab reencrypt test" in info.value.message


def test_read_with_other_decryption_failure(store, sops):
    store.write('test', Loadout.create(), encrypt_file=True)
    failing = LoadoutStore(store.directory, attr.evolve(sops, failures={'--decrypt': 'Error decrypting tree'}))

    with pytest.raises(CryptoFailure) as info:
        failing.read('test')
    assert not isinstance(info.value, KeyRotation)
    assert 'test' in info.value.message


def test_read_without_sops(store, sops):
    store.write('test', Loadout.create(), encrypt_file=True)
    missing = LoadoutStore(store.directory, attr.evolve(sops, installed=False))

    with pytest.raises(ToolNotFound):
        missing.read('test')


def test_read_plaintext_without_sops(store, sops):
    store.write('test', Loadout.create())
    missing = LoadoutStore(store.directory, attr.evolve(sops, installed=False))
    assert missing.read('test').entries == {}


def test_read_plaintext_that_looks_encrypted(store, sops):
    """A plaintext file with a top-level 'data' key is read after sops rejects it."""
    store.path('test').write_text(yaml.safe_dump({
        'data': {'metadata': {'description': 'wrapped'}, 'entries': {'KEY': 'value'}},
    }))

    loadout = store.read('test')
    assert loadout.entries == {'KEY': 'value'}
    assert loadout.metadata.description == 'wrapped'
    assert sops.modes() == ['--decrypt']


def test_add_entry_creates_loadout(store):
    store.add_entry('test', 'KEY', 'value', tags=['a'])
    loadout = store.read('test')
    assert loadout.entries == {'KEY': 'value'}
    assert loadout.metadata.tags == ['a']
    assert not store.is_file_encrypted('test')


def test_add_entry_merges_tags(store):
    store.add_entry('test', 'A', '1', tags=['b'])
    store.add_entry('test', 'B', '2', tags=['a', 'b'])
    loadout = store.read('test')
    assert loadout.entries == {'A': '1', 'B': '2'}
    assert set(loadout.metadata.tags) == {'a', 'b'}


def test_add_entry_encrypts_value(store):
    store.add_entry('test', 'SECRET', 'hunter2', encrypt_value=True)

    value = stored(store, 'test')['entries']['SECRET']
    assert value.startswith('SOPS:')
    assert store.sops.decrypt_value(value) == 'hunter2'


def test_add_entry_keeps_file_encryption(store):
    store.add_entry('test', 'A', '1', encrypt_file=True)
    store.add_entry('test', 'B', '2')
    assert store.is_file_encrypted('test')
    assert store.read('test').entries == {'A': '1', 'B': '2'}


def test_add_entry_to_encrypted_file_ignores_value_encryption(store):
    store.add_entry('test', 'A', '1', encrypt_file=True)
    store.add_entry('test', 'B', '2', encrypt_value=True)
    assert store.is_file_encrypted('test')
    assert store.read('test').entries['B'] == '2'


def test_add_entry_converts_to_file_encryption(store):
    store.add_entry('test', 'A', '1', encrypt_value=True)
    store.add_entry('test', 'B', '2', encrypt_file=True)
    assert store.is_file_encrypted('test')

    entries = store.read('test').entries
    assert entries['A'].startswith('SOPS:')
    assert entries['B'] == '2'


def test_save_keeps_file_mode(store, file_encrypted):
    store.write('test', Loadout.create(), encrypt_file=file_encrypted)
    loadout = store.read('test')
    loadout.set_description('changed')
    store.save('test', loadout)

    assert store.is_file_encrypted('test') is file_encrypted
    assert store.read('test').metadata.description == 'changed'


def test_names(store):
    for name in ('b', 'a', 'c'):
        store.write(name, Loadout.create())
    (store.directory / '.hidden.yaml').write_text('')
    (store.directory / 'notes.txt').write_text('')
    (store.directory / 'templates').mkdir()

    assert store.names() == ['a', 'b', 'c']
    assert list(store) == ['a', 'b', 'c']


def test_rename(store):
    store.add_entry('old', 'KEY', 'value')
    store.rename('old', 'new')
    assert not store.exists('old')
    assert store.read('new').entries == {'KEY': 'value'}


def test_rename_missing(store):
    with pytest.raises(NotFound):
        store.rename('old', 'new')


def test_rename_never_overwrites(store):
    store.add_entry('old', 'KEY', 'old')
    store.add_entry('new', 'KEY', 'new')
    with pytest.raises(LoadoutExists):
        store.rename('old', 'new')
    assert store.read('old').entries == {'KEY': 'old'}
    assert store.read('new').entries == {'KEY': 'new'}


def test_remove(store):
    store.write('test', Loadout.create())
    store.remove('test')
    assert not store.exists('test')

    with pytest.raises(NotFound):
        store.remove('test')


def test_reencrypt_values(store, sops):
    store.add_entry('test', 'SECRET', 'hunter2', encrypt_value=True)
    store.add_entry('test', 'PLAIN', 'visible')
    del sops.calls[:]

    assert store.reencrypt('test') == ['SECRET']
    assert sops.modes() == ['--decrypt', '--encrypt']

    entries = store.read('test').entries
    assert entries['PLAIN'] == 'visible'
    assert entries['SECRET'].startswith('SOPS:')
    assert sops.decrypt_value(entries['SECRET']) == 'hunter2'


def test_reencrypt_file(store, sops):
    store.add_entry('test', 'KEY', 'value', encrypt_file=True)
    del sops.calls[:]

    assert store.reencrypt('test') == []
    assert sops.modes()[0] == '--rotate'
    assert store.is_file_encrypted('test')


def test_import_dotenv_merges(store):
    store.add_entry('test', 'KEY1', 'old')
    store.add_entry('test', 'KEEP', 'kept')
    store.import_dotenv('test', "KEY1=value1\n# comment\nKEY2=a=b\n")
    assert store.read('test').entries == {'KEY1': 'value1', 'KEEP': 'kept', 'KEY2': 'a=b'}


def test_import_dotenv_keeps_file_encryption(store):
    store.add_entry('test', 'KEY', 'value', encrypt_file=True)
    store.import_dotenv('test', "OTHER=value\n")
    assert store.is_file_encrypted('test')


def test_import_yaml_replaces(store):
    store.add_entry('test', 'OLD', 'value')
    store.import_yaml('test', "metadata:\n  description: imported\nentries:\n  NEW: value\n")
    loadout = store.read('test')
    assert loadout.entries == {'NEW': 'value'}
    assert loadout.metadata.description == 'imported'


def test_import_yaml_rejects_duplicates(store):
    with pytest.raises(DuplicateKey):
        store.import_yaml('test', "entries:\n  A: one\n  A: two\n")
    assert not store.exists('test')
