"""Entry fingerprinting and change classification.

Entries are identified by the source's own identifier (``<guid>`` / ``<id>``,
falling back to the entry link). Sources that give neither get a fallback
fingerprint over the feed URL, the normalized title and the published
time. Normalizing trims and lower-cases the title and collapses each inner
run of whitespace to one space, so "Hello   World" and "hello world" share
a fallback fingerprint. Two distinct entries that collide under the fallback
are indistinguishable: the later one in fetch order overwrites the earlier.
"""

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from feedsync.feed_parser import ParsedEntry

FINGERPRINT_LENGTH = 32


class Classification(Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ClassifiedEntry:
    """A parsed entry with its identity and merge decision."""

    entry: ParsedEntry
    fingerprint: str
    content_hash: str
    classification: Classification


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def normalize_title(title: str | None) -> str:
    return " ".join((title or "").split()).lower()


def fingerprint_for(feed_url: str, entry: ParsedEntry) -> str:
    """Stable identity of an entry within its feed."""
    identifier = entry.guid or entry.link
    if identifier:
        return _digest("id", identifier.strip())[:FINGERPRINT_LENGTH]
    published = entry.published_at.isoformat() if entry.published_at else ""
    return _digest(
        "fallback", feed_url, normalize_title(entry.title), published
    )[:FINGERPRINT_LENGTH]


def content_hash_for(entry: ParsedEntry) -> str:
    """Hash over the user-visible content, used to detect re-publication."""
    return _digest(
        entry.title or "",
        entry.link or "",
        entry.author or "",
        entry.summary or "",
        entry.published_at.isoformat() if entry.published_at else "",
    )


def classify(
    fingerprint: str, content_hash: str, known: Mapping[str, str]
) -> Classification:
    stored_hash = known.get(fingerprint)
    if stored_hash is None:
        return Classification.NEW
    if stored_hash != content_hash:
        return Classification.CHANGED
    return Classification.UNCHANGED


def plan_merge(
    feed_url: str,
    entries: Iterable[ParsedEntry],
    known: Mapping[str, str],
) -> list[ClassifiedEntry]:
    """Classify a freshly fetched batch against what the store already has.

    The result keeps fetch order. When two entries in the batch share a
    fingerprint, the later one replaces the earlier in place.
    """
    planned: dict[str, ClassifiedEntry] = {}
    for entry in entries:
        fingerprint = fingerprint_for(feed_url, entry)
        content_hash = content_hash_for(entry)
        planned[fingerprint] = ClassifiedEntry(
            entry=entry,
            fingerprint=fingerprint,
            content_hash=content_hash,
            classification=classify(fingerprint, content_hash, known),
        )
    return list(planned.values())
