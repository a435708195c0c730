#!/usr/bin/env python3
"""
Post identity: recognizing "the same post" across runs.

A post's identity key is its canonical link, else its normalized guid, else its
trimmed title. The stored id is a hash of (source id, identity key), so no
mapping table is needed to keep ids stable between runs.
"""

from datetime import datetime, timezone
from hashlib import blake2b
from typing import Dict, Iterable, List, Optional

from dates import parse_iso
from models import Post
from utils import canonicalize_url, coerce_to_string, normalize_guid

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_post_key(link=None, guid=None, title=None, base_url: Optional[str] = None) -> str:
    """Identity key for an item: canonical link, else guid, else title ('' when none)."""
    canonical_link = canonicalize_url(link, base_url)
    if canonical_link:
        return canonical_link
    guid_key = normalize_guid(guid, base_url)
    if guid_key:
        return guid_key
    return coerce_to_string(title).strip()


def make_lookup_key(source_id: str, post_key: str) -> str:
    return f"{source_id}::{post_key}"


def generate_post_id(source_id: str, post_key: str) -> str:
    """Deterministic 64-bit id for (source, identity key), as 16 hex chars."""
    digest = blake2b(f"{source_id}-{post_key}".encode("utf-8"), digest_size=8)
    return digest.hexdigest()


def lookup_key_for_post(post: Post) -> str:
    """Lookup key recomputed from a stored post (its link, else its title, else its id)."""
    key = get_post_key(link=post.link, title=post.title) or post.id
    return make_lookup_key(post.source_id, key)


class PostSnapshot:
    """Existing store posts indexed by id and by lookup key.

    Lets the item pipeline find the stored version of a fresh item whether the
    stored row was keyed by link, guid or title.

    Posts whose stored link is their source's homepage (items that had no link
    of their own) are only reachable by id, so an item that really links to
    the homepage cannot take over their identity.
    """

    def __init__(self, posts: Iterable[Post] = (), source_urls: Optional[Dict[str, str]] = None):
        self.by_id: Dict[str, Post] = {}
        self.by_lookup_key: Dict[str, Post] = {}
        self._homepages: Dict[str, set] = {
            source_id: {url, canonicalize_url(url)}
            for source_id, url in (source_urls or {}).items() if url
        }
        for post in posts:
            self.add(post)

    def add(self, post: Post) -> None:
        self.by_id[post.id] = post
        if post.link and post.link in self._homepages.get(post.source_id, ()):
            return
        self.by_lookup_key.setdefault(lookup_key_for_post(post), post)

    def find(self, post_id: str, lookup_key: str) -> Optional[Post]:
        """Stored post matching the computed id first, then the lookup key."""
        return self.by_id.get(post_id) or self.by_lookup_key.get(lookup_key)

    def __len__(self) -> int:
        return len(self.by_id)


def _sort_key(post: Post):
    dt = parse_iso(post.date)
    seconds = (dt - _EPOCH).total_seconds() if dt else float("-inf")
    return (-seconds, post.id)


def sort_posts(posts: Iterable[Post]) -> List[Post]:
    """Newest first; ties broken by id so the order is a pure function of the data."""
    return sorted(posts, key=_sort_key)


def merge_posts(existing: Iterable[Post], fresh: Iterable[Post]) -> List[Post]:
    """Union of stored and freshly resolved posts, unique by id.

    Fresh values replace stored ones with the same id; stored posts that were
    not re-observed are kept unchanged.
    """
    merged: Dict[str, Post] = {post.id: post for post in existing}
    for post in fresh:
        merged[post.id] = post
    return sort_posts(merged.values())
