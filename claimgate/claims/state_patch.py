"""
StatePatch — abstract mutation instructions proposed by plugins.

Plugins never write state. They return patches and guards relative to their
own namespace; the committer prefixes `<instance_id>.` and hands one
ConditionalUpdate to the store, which checks every guard and applies every
patch in a single atomic step.

    Set(path, value)              overwrite
    Increment(path, delta)        numeric add, optional capture of old value
    AppendUnique(path, value)     list append if absent

    Below(path, limit)            value at path (default 0) < limit
    LengthBelow(path, limit)      len(list at path) (default 0) < limit
    Unset(path)                   nothing stored at path
"""

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

SEP = "."
DOT_ESCAPE = "[dot]"


# =============================================================================
# PATH SEGMENTS
# =============================================================================

def escape_segment(segment: str) -> str:
    """Make an untrusted id safe to use as one path segment.

    Raises:
        ValueError: if the id already contains the reserved escape sequence.
    """
    segment = str(segment)
    if DOT_ESCAPE in segment:
        raise ValueError(f"Invalid reserved sequence in ID ({DOT_ESCAPE})")
    return segment.replace(SEP, DOT_ESCAPE)


def join_path(*segments: Any) -> str:
    return SEP.join(str(s) for s in segments if s != "")


# =============================================================================
# PATCHES & GUARDS
# =============================================================================

@dataclass(frozen=True)
class CapturedValue:
    """Placeholder resolved at commit time from an Increment capture."""
    name: str


@dataclass(frozen=True)
class SetPatch:
    path: str
    value: Any


@dataclass(frozen=True)
class IncrementPatch:
    path: str
    delta: int = 1
    capture: Optional[str] = None


@dataclass(frozen=True)
class AppendUniquePatch:
    path: str
    value: Any


@dataclass(frozen=True)
class Below:
    path: str
    limit: int


@dataclass(frozen=True)
class LengthBelow:
    path: str
    limit: int


@dataclass(frozen=True)
class Unset:
    path: str


StatePatch = Union[SetPatch, IncrementPatch, AppendUniquePatch]
StateGuard = Union[Below, LengthBelow, Unset]


def scoped(item: Union[StatePatch, StateGuard], prefix: str):
    """Re-root a plugin-relative patch or guard under `prefix`."""
    return replace(item, path=join_path(prefix, item.path))


@dataclass
class ConditionalUpdate:
    attempt_id: str
    attempt_record: Dict[str, Any] = field(default_factory=dict)
    guards: List[StateGuard] = field(default_factory=list)
    patches: List[StatePatch] = field(default_factory=list)


class GuardRejected(Exception):
    """A guard did not hold; the update matched nothing."""


# =============================================================================
# INTERPRETER
# =============================================================================

def read_path(root: Dict[str, Any], path: str) -> Any:
    node: Any = root
    for seg in path.split(SEP):
        if not isinstance(node, dict) or seg not in node:
            return None
        node = node[seg]
    return node


def _parent(root: Dict[str, Any], path: str) -> Tuple[Dict[str, Any], str]:
    segs = path.split(SEP)
    node = root
    for seg in segs[:-1]:
        nxt = node.get(seg)
        if nxt is None:
            nxt = node[seg] = {}
        elif not isinstance(nxt, dict):
            raise TypeError(f"Cannot descend into non-object at {seg!r} of {path!r}")
        node = nxt
    return node, segs[-1]


def _check_guard(state: Dict[str, Any], guard: StateGuard) -> None:
    current = read_path(state, guard.path)
    if isinstance(guard, Below):
        if (current or 0) >= guard.limit:
            raise GuardRejected(f"{guard.path} reached limit {guard.limit}")
    elif isinstance(guard, LengthBelow):
        if len(current or []) >= guard.limit:
            raise GuardRejected(f"{guard.path} reached length {guard.limit}")
    elif isinstance(guard, Unset):
        if current is not None:
            raise GuardRejected(f"{guard.path} already set")
    else:
        raise TypeError(f"Unknown guard {guard!r}")


def _resolve(value: Any, captures: Dict[str, Any]) -> Any:
    if isinstance(value, CapturedValue):
        if value.name not in captures:
            raise KeyError(f"No captured value named {value.name!r}")
        return captures[value.name]
    if isinstance(value, dict):
        return {k: _resolve(v, captures) for k, v in value.items()}
    return value


def apply_update(doc: Dict[str, Any], update: ConditionalUpdate) -> Dict[str, Any]:
    """Check guards and apply patches to a claim document dict in place.

    The document is only modified when every guard holds and every patch
    applies; otherwise it is left untouched.

    Returns:
        Values captured by Increment patches (pre-increment values).

    Raises:
        GuardRejected: if the attempt is already recorded or a guard fails.
    """
    attempts = doc.get("claim_attempts") or {}
    if update.attempt_id in attempts:
        raise GuardRejected(f"Attempt {update.attempt_id} already recorded")

    state = doc.get("state") or {}
    for guard in update.guards:
        _check_guard(state, guard)

    work = copy.deepcopy(state)
    captures: Dict[str, Any] = {}
    for patch in update.patches:
        parent, key = _parent(work, patch.path)
        if isinstance(patch, SetPatch):
            parent[key] = _resolve(patch.value, captures)
        elif isinstance(patch, IncrementPatch):
            old = parent.get(key) or 0
            if patch.capture:
                captures[patch.capture] = old
            parent[key] = old + patch.delta
        elif isinstance(patch, AppendUniquePatch):
            value = _resolve(patch.value, captures)
            items = parent.setdefault(key, [])
            if not isinstance(items, list):
                raise TypeError(f"Cannot append to non-list at {patch.path!r}")
            if value not in items:
                items.append(value)
        else:
            raise TypeError(f"Unknown patch {patch!r}")

    doc["state"] = work
    attempts = dict(attempts)
    attempts[update.attempt_id] = _resolve(update.attempt_record, captures)
    doc["claim_attempts"] = attempts
    return captures
