"""
Heuristic parent matching for imported shipments.

When an incoming consignee has no external id that we already know, we try
to attach it to an existing customer by name and address before creating a
new one. All of that logic lives in match_parent() so it can be swapped for
something smarter (fuzzy matching, phone/email keys) without touching the
session orchestration.
"""
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from yardsync.models.records import Customer

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ParentMatch:
    """Identity hints for resolving the parent of an imported record."""

    external_id: Optional[str]
    full_name: str
    address: Optional[str] = None


ParentMatcher = Callable[[ParentMatch, Iterable[Customer]], Optional[Customer]]


def normalize_key(value: Optional[str]) -> str:
    """Lower-case, strip punctuation and collapse whitespace: "12 Main St." -> "12 main st"."""
    if not value:
        return ""
    return " ".join(_NON_ALNUM.sub(" ", value.lower()).split())


def match_parent(match: ParentMatch, candidates: Iterable[Customer]) -> Optional[Customer]:
    """
    Return the candidate that represents the same person, or None.

    A candidate matches when the normalized names are equal and either the
    normalized addresses are equal or one side has no address at all.
    Candidates already bound to a different external id never match.
    Placeholders are preferred last so a real customer wins over a synthesized one.
    """
    name = normalize_key(match.full_name)
    if not name:
        return None
    address = normalize_key(match.address)

    hits = []
    for customer in candidates:
        if customer.external_id and match.external_id and customer.external_id != match.external_id:
            continue
        if normalize_key(customer.full_name) != name:
            continue
        other = normalize_key(customer.address)
        if address and other and address != other:
            continue
        hits.append(customer)

    if not hits:
        return None
    hits.sort(key=lambda c: (c.is_placeholder, c.id or 0))
    return hits[0]
