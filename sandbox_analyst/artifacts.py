# sandbox_analyst/artifacts.py
from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from .models import Artifact


class ArtifactAccumulator:
    """
    Ordered, append-only collection of chart images produced during one run.

    No deduplication: two identical charts from different rounds are both kept.
    Pairing images with narrative sections is left to whoever renders the report.
    """

    def __init__(self) -> None:
        self._items: List[Artifact] = []

    def add(self, data: bytes, producing_round: int, tool_call_id: Optional[str] = None) -> Artifact:
        artifact = Artifact(
            data=data,
            ordinal=len(self._items),
            producing_round=producing_round,
            tool_call_id=tool_call_id,
        )
        self._items.append(artifact)
        return artifact

    def extend(self, images: List[bytes], producing_round: int, tool_call_id: Optional[str] = None) -> List[Artifact]:
        return [self.add(img, producing_round, tool_call_id) for img in images]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Artifact]:
        return iter(list(self._items))

    def snapshot(self) -> List[Artifact]:
        return list(self._items)

    def images(self) -> List[bytes]:
        return [a.data for a in self._items]

    def by_round(self) -> Dict[int, List[Artifact]]:
        grouped: Dict[int, List[Artifact]] = {}
        for a in self._items:
            grouped.setdefault(a.producing_round, []).append(a)
        return grouped
