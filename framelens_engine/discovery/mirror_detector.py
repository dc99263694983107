"""
FrameLens Engine - Mirror Frame Detection

Finds distinct frame IDs that carry the same payload at nearly the same time
and groups them transitively.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.config import Config, MirrorConfig
from .models import Frame, TimestampedPayload

logger = logging.getLogger(__name__)


@dataclass
class MirrorGroup:
    """Frame IDs transmitting identical payloads in lockstep."""

    frame_ids: List[int]
    match_count: int
    total_count: int
    match_percentage: int
    sample_payload: Optional[bytes] = None

    def to_dict(self):
        return {
            "frame_ids": self.frame_ids,
            "match_count": self.match_count,
            "total_count": self.total_count,
            "match_percentage": self.match_percentage,
            "sample_payload": self.sample_payload.hex().upper()
            if self.sample_payload is not None
            else None,
        }


@dataclass
class PairComparison:
    """Result of comparing the payload sequences of two frame IDs."""

    match_count: int = 0
    total_count: int = 0
    sample_payload: Optional[bytes] = None

    @property
    def match_percentage(self) -> float:
        if self.total_count == 0:
            return 0.0
        return (self.match_count / self.total_count) * 100


def timestamped_payloads_by_id(
    frames: Iterable[Frame],
) -> Dict[int, List[TimestampedPayload]]:
    """Group frames into per-ID payload sequences sorted by timestamp."""
    grouped: Dict[int, List[TimestampedPayload]] = {}
    for frame in frames:
        grouped.setdefault(frame.id, []).append(
            TimestampedPayload(frame.timestamp_us, frame.data)
        )
    for payloads in grouped.values():
        payloads.sort(key=lambda p: p.timestamp_us)
    return grouped


def compare_payload_sequences(
    payloads_a: Sequence[TimestampedPayload],
    payloads_b: Sequence[TimestampedPayload],
    tolerance_us: int,
) -> PairComparison:
    """Compare every A payload with the B payloads inside its time window.

    Both sequences must be sorted by timestamp. Each (A, B) pair inside the
    window counts towards the total; identical payloads count as matches.
    """
    result = PairComparison()
    b_index = 0

    for a in payloads_a:
        while (
            b_index < len(payloads_b)
            and payloads_b[b_index].timestamp_us < a.timestamp_us - tolerance_us
        ):
            b_index += 1

        i = b_index
        while i < len(payloads_b) and payloads_b[i].timestamp_us <= a.timestamp_us + tolerance_us:
            result.total_count += 1
            if payloads_b[i].payload == a.payload:
                result.match_count += 1
                if result.sample_payload is None:
                    result.sample_payload = a.payload
            i += 1

    return result


class _UnionFind:
    def __init__(self):
        self.parent: Dict[int, int] = {}

    def find(self, x: int) -> int:
        self.parent.setdefault(x, x)
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, x: int, y: int):
        px, py = self.find(x), self.find(y)
        if px != py:
            self.parent[px] = py


class MirrorFrameDetector:
    """Cross frame ID payload correlation."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> MirrorConfig:
        return self.config.mirror

    def detect(
        self,
        frame_payloads: Mapping[int, Sequence[TimestampedPayload]],
        tolerance_us: Optional[int] = None,
    ) -> List[MirrorGroup]:
        """Detect mirror groups.

        Args:
            frame_payloads: Frame ID to timestamp-sorted payloads.
            tolerance_us: Time window for comparing payloads.

        Returns:
            Groups sorted by member count, largest first.
        """
        tolerance_us = self.settings.tolerance_us if tolerance_us is None else tolerance_us
        frame_ids = sorted(frame_payloads)
        if len(frame_ids) < 2:
            return []

        confirmed: Dict[Tuple[int, int], PairComparison] = {}
        pairs_compared = 0

        for i, id_a in enumerate(frame_ids):
            for id_b in frame_ids[i + 1 :]:
                payloads_a = frame_payloads[id_a]
                payloads_b = frame_payloads[id_b]
                if (
                    len(payloads_a) < self.settings.min_samples
                    or len(payloads_b) < self.settings.min_samples
                ):
                    continue

                pairs_compared += 1
                comparison = compare_payload_sequences(payloads_a, payloads_b, tolerance_us)
                if (
                    comparison.match_count > 0
                    and comparison.match_percentage >= self.settings.min_match_percentage
                ):
                    confirmed[(id_a, id_b)] = comparison

        self.logger.debug(
            f"Compared {pairs_compared} frame ID pairs, {len(confirmed)} confirmed mirrors",
            extra={"pairs_compared": pairs_compared, "confirmed_pairs": len(confirmed)},
        )
        if not confirmed:
            return []

        union_find = _UnionFind()
        for id_a, id_b in confirmed:
            union_find.union(id_a, id_b)

        # dicts keep insertion order: groups appear in confirmed pair order
        members: Dict[int, List[int]] = {}
        for id_a, id_b in confirmed:
            group = members.setdefault(union_find.find(id_a), [])
            for frame_id in (id_a, id_b):
                if frame_id not in group:
                    group.append(frame_id)

        groups = [self._build_group(sorted(ids), confirmed) for ids in members.values()]
        groups.sort(key=lambda g: len(g.frame_ids), reverse=True)
        return groups

    def detect_frames(
        self, frames: Iterable[Frame], tolerance_us: Optional[int] = None
    ) -> List[MirrorGroup]:
        """``detect`` over raw frames."""
        return self.detect(timestamped_payloads_by_id(frames), tolerance_us)

    @staticmethod
    def _build_group(
        frame_ids: List[int], confirmed: Mapping[Tuple[int, int], PairComparison]
    ) -> MirrorGroup:
        match_count = 0
        total_count = 0
        sample_payload = None

        for i, id_a in enumerate(frame_ids):
            for id_b in frame_ids[i + 1 :]:
                stats = confirmed.get((id_a, id_b))
                if stats is None:
                    continue
                match_count += stats.match_count
                total_count += stats.total_count
                if sample_payload is None:
                    sample_payload = stats.sample_payload

        percentage = int(match_count / total_count * 100 + 0.5) if total_count else 0
        return MirrorGroup(
            frame_ids=frame_ids,
            match_count=match_count,
            total_count=total_count,
            match_percentage=percentage,
            sample_payload=sample_payload,
        )
