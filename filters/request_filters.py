"""Filters over the merged request stream.

These run after the per-kind results are merged, so a page always reflects
the same ordering no matter which kinds the actor can see.
"""

import re
import unicodedata

_SPACES = re.compile(r"\s+")


def _norm(value) -> str:
    s = unicodedata.normalize("NFKC", str(value or "")).strip()
    return _SPACES.sub(" ", s).casefold()


def matches_search(tagged, term, fields) -> bool:
    """Case-insensitive substring match over the kind's text fields."""
    needle = _norm(term)
    if not needle:
        return True
    if needle == str(tagged.record.id):
        return True
    for name in fields:
        if needle in _norm(getattr(tagged.record, name, None)):
            return True
    return False


def apply_stream_filters(items, *, search=None, statuses=None, kinds=None, search_fields=None):
    """Apply search, status and kind filters to a list of TaggedRecord."""
    statuses = {s for s in (statuses or ()) if s}
    kinds = {k for k in (kinds or ()) if k}
    search_fields = search_fields or {}

    out = []
    for tagged in items:
        if kinds and tagged.kind not in kinds:
            continue
        if statuses and tagged.record.status not in statuses:
            continue
        if search and not matches_search(tagged, search, search_fields.get(tagged.kind, ())):
            continue
        out.append(tagged)
    return out
