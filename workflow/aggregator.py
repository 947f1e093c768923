# workflow/aggregator.py
"""Unified request list across kinds.

Each kind is fetched on its own (concurrently when workers allow), tagged,
merged by ``created_at`` descending and only then filtered and paginated.
A kind whose fetch fails contributes nothing and is reported in
``Page.degraded``; the rest of the list is still returned.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from flask import has_app_context

from filters.request_filters import apply_stream_filters
from workflow.errors import ValidationFailed
from workflow.registry import all_specs, get_kind

logger = logging.getLogger(__name__)

SCOPES = ("all", "mine", "actionable")


def _split(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        parts = []
        for v in value:
            parts.extend(_split(v))
        return tuple(parts)
    return tuple(p.strip().lower() for p in str(value).split(",") if p.strip())


@dataclass(frozen=True)
class RequestFilter:
    search: Optional[str] = None
    statuses: Tuple[str, ...] = ()
    kinds: Tuple[str, ...] = ()
    scope: str = "all"
    page: int = 1
    page_size: int = 20

    @classmethod
    def from_args(cls, args, *, default_page_size=20, max_page_size=100) -> "RequestFilter":
        """Build from query-string args (a MultiDict or a plain dict)."""
        getlist = getattr(args, "getlist", None)

        def many(name):
            if getlist is not None:
                return _split(getlist(name))
            return _split(args.get(name))

        kinds = many("kind")
        for kind in kinds:
            get_kind(kind)

        scope = (args.get("scope") or "all").strip().lower()
        if scope not in SCOPES:
            raise ValidationFailed(f"'scope' must be one of {', '.join(SCOPES)}", details={"field": "scope"})

        try:
            page = int(args.get("page") or 1)
            page_size = int(args.get("page_size") or default_page_size)
        except (TypeError, ValueError):
            raise ValidationFailed("'page' and 'page_size' must be integers", details={"field": "page"})
        if page < 1:
            raise ValidationFailed("'page' must be at least 1", details={"field": "page"})
        if page_size < 1 or page_size > max_page_size:
            raise ValidationFailed(
                f"'page_size' must be between 1 and {max_page_size}", details={"field": "page_size"}
            )

        search = (args.get("search") or args.get("q") or "").strip() or None
        return cls(search=search, statuses=many("status"), kinds=kinds, scope=scope, page=page, page_size=page_size)


@dataclass(frozen=True)
class TaggedRecord:
    kind: str
    record: object
    actions: Tuple[str, ...] = ()

    @property
    def created_at(self):
        return self.record.created_at or datetime.min

    def sort_key(self):
        return (self.created_at, self.kind, self.record.id)

    def to_dict(self):
        data = self.record.to_dict()
        data["kind"] = self.kind
        data["actions"] = list(self.actions)
        return data


@dataclass
class Page:
    items: List[TaggedRecord] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    # kinds whose fetch failed and were left out
    degraded: Tuple[str, ...] = ()

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size)) if self.page_size else 1

    def to_dict(self):
        return {
            "items": [t.to_dict() for t in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
            "degraded": list(self.degraded),
        }


class Aggregator:
    def __init__(self, store, resolver, *, max_workers=6, app=None):
        self.store = store
        self.resolver = resolver
        self.max_workers = max(1, int(max_workers or 1))
        self.app = app

    # =========================
    # Per-kind fetch
    # =========================
    def _fetch_kind(self, actor, kind, scope):
        spec = get_kind(kind)
        if scope == "mine":
            rows = self.store.list_by_kind(kind, requester_id=actor.id)
        elif self.resolver.can_view_kind(actor, kind):
            rows = self.store.list_by_kind(kind)
        else:
            rows = self.store.list_by_kind(kind, involving_id=actor.id)

        tagged = []
        for record in rows:
            if not self.resolver.can_view(actor, kind, record):
                continue
            actions = ()
            if not spec.is_terminal(record.status) and self.resolver.can_decide(actor, kind, record):
                actions = tuple(spec.actions_from(record.status))
            if scope == "actionable" and not actions:
                continue
            tagged.append(TaggedRecord(kind=kind, record=record, actions=actions))
        return tagged

    def _safe_fetch(self, actor, kind, scope):
        try:
            if self.app is not None and not has_app_context():
                # worker threads start without the request's app context
                with self.app.app_context():
                    return kind, self._fetch_kind(actor, kind, scope), True
            return kind, self._fetch_kind(actor, kind, scope), True
        except Exception:
            logger.exception("Aggregator: fetching %s failed for user_id=%s", kind, actor.id)
            return kind, [], False

    def fetch_all(self, actor, kinds, scope="all"):
        """Return ``(merged, degraded_kinds)``; waits for every kind."""
        kinds = list(kinds)
        if self.max_workers == 1 or len(kinds) <= 1:
            results = [self._safe_fetch(actor, k, scope) for k in kinds]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(kinds))) as executor:
                results = list(executor.map(lambda k: self._safe_fetch(actor, k, scope), kinds))

        merged, degraded = [], []
        for kind, tagged, ok in results:
            if not ok:
                degraded.append(kind)
            merged.extend(tagged)
        merged.sort(key=TaggedRecord.sort_key, reverse=True)
        return merged, tuple(degraded)

    # =========================
    # listRequests
    # =========================
    def list_requests(self, actor, flt: Optional[RequestFilter] = None) -> Page:
        flt = flt or RequestFilter()
        kinds = [spec.kind for spec in all_specs()]

        merged, degraded = self.fetch_all(actor, kinds, flt.scope)
        filtered = apply_stream_filters(
            merged,
            search=flt.search,
            statuses=flt.statuses,
            kinds=flt.kinds,
            search_fields={spec.kind: spec.search_fields for spec in all_specs()},
        )

        start = (flt.page - 1) * flt.page_size
        return Page(
            items=filtered[start:start + flt.page_size],
            total=len(filtered),
            page=flt.page,
            page_size=flt.page_size,
            degraded=degraded,
        )
