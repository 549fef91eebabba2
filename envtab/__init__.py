"""
Envtab manages loadouts: named sets of environment variables.

Each loadout is a YAML file in ~/.envtab (or $XDG_DATA_HOME/envtab). Values
can be encrypted one at a time, or the whole file can be encrypted, using
sops. Encrypted values are decrypted when a loadout is exported or edited.

Add entries to a loadout:

\b
    $ envtab add aws AWS_REGION=eu-west-2 cloud
    $ envtab add -e aws AWS_SECRET_ACCESS_KEY=...

Load a loadout into the current shell:

\b
    $ eval "$(envtab export aws)"

Edit a loadout in $EDITOR, with encrypted values shown in plaintext:

\b
    $ envtab edit aws

Show which loadouts are active in the current shell:

\b
    $ envtab show
"""

__version__ = '1.0.0'
