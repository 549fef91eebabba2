import logging
import os
import re
import typing

import attr

from .formats import VALUE_PREFIX
from .loadout import Loadout
from .sops import SOPS
from .utils import CryptoFailure, KeyRotation, ToolNotFound

log = logging.getLogger(__name__)


def reference(key: str) -> 're.Pattern[str]':
    """Match $KEY or ${KEY}, but not $KEY_SUFFIX."""
    name = re.escape(key)
    return re.compile(rf'\$(?:\{{{name}\}}|{name}(?![A-Za-z0-9_]))')


def is_reference(key: str, value: str) -> bool:
    return bool(reference(key).search(value))


def segments(value: str, separator: str = os.pathsep) -> typing.List[str]:
    return [segment for segment in value.split(separator) if segment]


def merge_segments(*values: typing.Sequence[str]) -> typing.List[str]:
    """Concatenate segment lists, dropping repeats and keeping first-seen order."""
    return list(dict.fromkeys(segment for value in values for segment in value))


@attr.s
class Exporter:
    """
    Turns loadouts into shell export statements.

    Entries that refer to their own variable (PATH=/opt/bin:$PATH) are
    merged into the live value, which is updated so later entries and
    loadouts in the same run see the result.
    """
    sops: SOPS = attr.ib(factory=SOPS)
    environ: typing.Dict[str, str] = attr.ib(factory=lambda: dict(os.environ))
    separator: str = attr.ib(default=os.pathsep)

    def export(self, loadout: Loadout, name: str = 'LOADOUT') -> typing.List[str]:
        lines = []
        for key in sorted(loadout.entries):
            value = loadout.entries[key]
            if not value:
                continue

            if value.startswith(VALUE_PREFIX):
                decrypted = self.decrypt(name, key, value)
                if decrypted is None:
                    continue
                value = decrypted

            if is_reference(key, value):
                lines.append(self.merge(key, value))
            else:
                lines.append(f"export {key}={value}")

        loadout.touch_loaded()
        return lines

    def decrypt(self, name: str, key: str, value: str) -> typing.Optional[str]:
        try:
            return self.sops.decrypt_value(value)
        except ToolNotFound:
            log.debug(f"Skipping encrypted entry {key}, sops is not installed")
        except KeyRotation as error:
            log.warning(
                f"Skipping {key}: encryption keys may have been rotated. "
                f"Run 'envtab reencrypt {name}' to re-encrypt with current keys ({error.stderr})")
        except CryptoFailure as error:
            log.error(f"Skipping {key}: failed to decrypt value: {error.message}")
        return None

    def merge(self, key: str, value: str) -> str:
        added = reference(key).sub('', value)
        added = re.sub(f'{re.escape(self.separator)}{{2,}}', self.separator, added)
        added = added.strip(self.separator)
        log.debug(f"Merging {added} into {key}")

        combined = self.separator.join(merge_segments(
            segments(self.environ.get(key, ''), self.separator),
            segments(added, self.separator)))
        self.environ[key] = combined
        return f"export {key}={combined}"
