"""Split entity ids into upstream-sized filter strings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from reports.lib.constants import DEFAULT_MAX_ASIN_STRING_CHARS

__all__ = ["EntityChunk", "split_into_chunks"]


@dataclass(frozen=True)
class EntityChunk:
    entity_ids: List[str]

    @property
    def filter_string(self) -> str:
        return " ".join(self.entity_ids)


def split_into_chunks(
    entity_ids: Iterable[str],
    max_chars: int = DEFAULT_MAX_ASIN_STRING_CHARS,
) -> List[EntityChunk]:
    """Greedily pack ids so each space-joined chunk fits in ``max_chars``.

    Ids are trimmed; blanks and repeats are dropped, first occurrence wins.
    An id longer than ``max_chars`` on its own cannot be sent and raises.

    Example:
        >>> [c.filter_string for c in split_into_chunks(["B01", "B02", "B03"], max_chars=7)]
        ['B01 B02', 'B03']
    """
    if max_chars < 1:
        raise ValueError("max_chars must be >= 1")

    seen = set()
    chunks: List[EntityChunk] = []
    current: List[str] = []
    current_len = 0

    for raw in entity_ids:
        entity_id = str(raw).strip()
        if not entity_id or entity_id in seen:
            continue
        if len(entity_id) > max_chars:
            raise ValueError(f"Entity id {entity_id!r} is longer than {max_chars} characters")
        seen.add(entity_id)

        add_len = len(entity_id) if not current else len(entity_id) + 1
        if current_len + add_len > max_chars:
            chunks.append(EntityChunk(current))
            current = [entity_id]
            current_len = len(entity_id)
        else:
            current.append(entity_id)
            current_len += add_len

    if current:
        chunks.append(EntityChunk(current))
    return chunks
