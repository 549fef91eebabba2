"""
Tags are plain strings. A loadout holds them as a set.
"""

import typing

Tags = typing.List[str]


def split_tags(tags: typing.Iterable[str]) -> Tags:
    """Split every tag on commas and whitespace."""
    return [part for tag in tags for part in tag.replace(',', ' ').split()]


def remove_empty_tags(tags: typing.Iterable[str]) -> Tags:
    return [tag for tag in tags if tag.strip()]


def remove_duplicate_tags(tags: typing.Iterable[str]) -> Tags:
    """Deduplicate, keeping the first occurrence of each tag."""
    return list(dict.fromkeys(tags))


def clean_tags(tags: typing.Iterable[str]) -> Tags:
    return remove_duplicate_tags(remove_empty_tags(split_tags(tags)))


def merge_tags(existing: typing.Iterable[str], new: typing.Iterable[str]) -> Tags:
    # Sorted so rewritten files stay stable.
    return sorted(set(existing) | set(new))


def remove_tags(existing: typing.Iterable[str], remove: typing.Iterable[str]) -> Tags:
    unwanted = set(remove)
    return [tag for tag in existing if tag not in unwanted]
