from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 25


class CandidateNotFound(KeyError):
    def __init__(self, candidate_id: str) -> None:
        super().__init__(candidate_id)
        self.candidate_id = candidate_id

    def __str__(self) -> str:
        return f'candidate {self.candidate_id} not found'


def _decide(store, candidate_id: str, to_status: str, reviewer: Optional[str], now: Optional[float]) -> bool:
    cand = store.get_candidate(candidate_id)
    if cand is None:
        raise CandidateNotFound(candidate_id)
    if cand.review_status != 'PENDING':
        return False
    return store.transition_candidate(candidate_id, 'PENDING', to_status, reviewer=reviewer, now=now)


def approve(store, candidate_id: str, reviewer: Optional[str] = None, *, now: Optional[float] = None, event_bus=None) -> bool:
    """Move a PENDING candidate to APPROVED. Returns False when it was already decided."""
    changed = _decide(store, candidate_id, 'APPROVED', reviewer, now)
    if changed and event_bus is not None:
        event_bus.emit('candidate_reviewed', candidate_id=candidate_id, status='APPROVED', reviewer=reviewer)
    return changed


def reject(store, candidate_id: str, reviewer: Optional[str] = None, *, now: Optional[float] = None, event_bus=None) -> bool:
    changed = _decide(store, candidate_id, 'REJECTED', reviewer, now)
    if changed and event_bus is not None:
        event_bus.emit('candidate_reviewed', candidate_id=candidate_id, status='REJECTED', reviewer=reviewer)
    return changed


def _bulk(fn, store, candidate_ids: Iterable[str], reviewer, now, event_bus) -> Dict[str, List[str]]:
    report: Dict[str, List[str]] = {'changed': [], 'unchanged': [], 'missing': []}
    seen = set()
    for cid in candidate_ids:
        if cid in seen:
            continue
        seen.add(cid)
        try:
            ok = fn(store, cid, reviewer, now=now, event_bus=event_bus)
        except CandidateNotFound:
            report['missing'].append(cid)
            continue
        report['changed' if ok else 'unchanged'].append(cid)
    return report


def bulk_approve(store, candidate_ids: Iterable[str], reviewer: Optional[str] = None, *, now: Optional[float] = None, event_bus=None):
    return _bulk(approve, store, candidate_ids, reviewer, now, event_bus)


def bulk_reject(store, candidate_ids: Iterable[str], reviewer: Optional[str] = None, *, now: Optional[float] = None, event_bus=None):
    return _bulk(reject, store, candidate_ids, reviewer, now, event_bus)


def list_candidates(
    store,
    *,
    review_status: Optional[str] = None,
    media_type: Optional[str] = None,
    rule_id: Optional[str] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    page_size = min(MAX_PAGE_SIZE, max(1, int(page_size or DEFAULT_PAGE_SIZE)))
    rows, total = store.list_candidates(
        review_status=review_status,
        media_type=media_type,
        rule_id=rule_id,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return {
        'items': [c.to_dict() for c in rows],
        'page': page,
        'pageSize': page_size,
        'total': total,
        'pages': (total + page_size - 1) // page_size,
    }


def reset_candidates(store, rule_id: str, *, event_bus=None) -> int:
    """Drop a rule's undecided and reviewed candidates so the next scan can flag them again.

    Executed (DELETED) candidates stay as history.
    """
    removed = store.reset_candidates(rule_id)
    if event_bus is not None:
        event_bus.emit('candidates_reset', rule_id=rule_id, removed=removed)
    return removed
