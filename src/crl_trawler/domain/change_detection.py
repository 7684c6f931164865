"""
Change detection — content fingerprints for skipping redundant backend writes.

Two byte sequences are UNCHANGED iff their SHA-256 digests are equal. A
missing prior artifact is NOT_PRESENT, which is written exactly like CHANGED
but logged differently.
"""

from __future__ import annotations

import hashlib

from crl_trawler.domain.models import ChangeStatus


def fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def detect_change(new: bytes, previous: bytes | None) -> ChangeStatus:
    """
    Classify `new` against the stored bytes of one backend.

    An empty stored artifact counts as not present: a truncated file must
    never suppress a rewrite.
    """
    if not previous:
        return ChangeStatus.NOT_PRESENT
    if fingerprint(new) == fingerprint(previous):
        return ChangeStatus.UNCHANGED
    return ChangeStatus.CHANGED
