"""
Templates seed a new loadout with a set of well known variables.

Custom templates are .env files in the 'templates' directory next to the
loadouts and take precedence over the built in ones.
"""

import logging
import pathlib
import types
import typing

import attr

from .loadout import Loadout, parse_dotenv
from .utils import NotFound

log = logging.getLogger(__name__)

BUILTIN: typing.Mapping[str, typing.Sequence[str]] = {
    'aws': ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY', 'AWS_SESSION_TOKEN', 'AWS_PROFILE', 'AWS_REGION'),
    'azure': ('AZURE_CLIENT_ID', 'AZURE_CLIENT_SECRET', 'AZURE_TENANT_ID', 'AZURE_SUBSCRIPTION_ID'),
    'gcp': ('GOOGLE_APPLICATION_CREDENTIALS', 'CLOUDSDK_CORE_PROJECT', 'CLOUDSDK_COMPUTE_REGION'),
    'openstack': ('OS_AUTH_URL', 'OS_USERNAME', 'OS_PASSWORD', 'OS_PROJECT_NAME', 'OS_REGION_NAME'),
    'pgsql': ('PGHOST', 'PGPORT', 'PGDATABASE', 'PGUSER', 'PGPASSWORD'),
    'mysql': ('MYSQL_HOST', 'MYSQL_TCP_PORT', 'MYSQL_USER', 'MYSQL_PWD'),
    'redis': ('REDIS_HOST', 'REDIS_PORT', 'REDISCLI_AUTH'),
    'docker': ('DOCKER_HOST', 'DOCKER_CONFIG', 'DOCKER_CONTEXT'),
    'k8s': ('KUBECONFIG', 'KUBE_NAMESPACE'),
    'vault': ('VAULT_ADDR', 'VAULT_TOKEN', 'VAULT_NAMESPACE'),
    'terraform': ('TF_LOG', 'TF_WORKSPACE', 'TF_DATA_DIR'),
    'github': ('GITHUB_TOKEN', 'GH_HOST'),
    'proxy': ('HTTP_PROXY', 'HTTPS_PROXY', 'NO_PROXY'),
    'python': ('PYTHONPATH', 'VIRTUAL_ENV', 'PIP_INDEX_URL'),
    'go': ('GOPATH', 'GOBIN', 'GOPROXY', 'GOPRIVATE'),
    'sops': ('SOPS_AGE_KEY_FILE', 'SOPS_AGE_RECIPIENTS', 'SOPS_KMS_ARN', 'SOPS_PGP_FP'),
}


@attr.s(frozen=True)
class Template:
    name: str = attr.ib()
    description: str = attr.ib()
    entries: typing.Mapping[str, str] = attr.ib(converter=lambda e: types.MappingProxyType(dict(e)))

    def loadout(self) -> Loadout:
        loadout = Loadout.create()
        loadout.metadata.description = self.description
        loadout.entries.update(self.entries)
        return loadout


@attr.s(frozen=True)
class Templates:
    """A read-only registry of templates, loaded once."""
    templates: typing.Mapping[str, Template] = attr.ib(
        converter=lambda t: types.MappingProxyType(dict(t)))

    @classmethod
    def load(cls, directory: typing.Optional[pathlib.Path] = None) -> 'Templates':
        templates = {
            name: Template(name, f"Template: {name}", dict.fromkeys(keys, ''))
            for name, keys in BUILTIN.items()
        }
        if directory is not None and directory.is_dir():
            for path in sorted(directory.glob('*.env')):
                log.debug(f"Loading template {path}")
                templates[path.stem] = Template(
                    path.stem,
                    f"Template from .env file: {path.stem}",
                    parse_dotenv(path.read_text(encoding='utf-8')))
        return cls(templates)

    def __getitem__(self, name: str) -> Template:
        if name not in self.templates:
            raise NotFound(f"No template named {name} (available: {', '.join(self.names())})")
        return self.templates[name]

    def names(self) -> typing.List[str]:
        return sorted(self.templates)
