import json
from typing import Any, Iterable, List, Optional, Tuple

from deployledger.domain.models import DeploymentRecord, Fingerprint


def canonical_json(payload: Any) -> str:
    """Serializes with stable key ordering so equal objects produce equal text."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def has_changed(previous: Optional[Fingerprint], candidate: Optional[Fingerprint]) -> bool:
    """
    Decides whether `candidate` is a new revision relative to `previous`.

    A first deployment always counts as a change. Content hashes compare as plain
    strings; embedded payloads compare by their canonical serialization.
    """
    if previous is None and candidate is None:
        return False
    if previous is None or candidate is None:
        return True

    if isinstance(previous, str) and isinstance(candidate, str):
        return previous != candidate
    return canonical_json(previous) != canonical_json(candidate)


def annotate_changes(records: Iterable[DeploymentRecord]) -> List[Tuple[DeploymentRecord, bool]]:
    """Pairs each record of an oldest-first sequence with whether it changed from its predecessor."""
    annotated = []
    previous: Optional[DeploymentRecord] = None
    for record in records:
        changed = has_changed(previous.fingerprint if previous else None, record.fingerprint)
        annotated.append((record, changed))
        previous = record
    return annotated
