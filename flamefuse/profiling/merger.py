"""
flamefuse Profile Merger

Combines per-context profiles into one MergedProfile:
- Aligns independent time bases onto the earliest start time
- Re-ids nodes so ids are unique across all sources
- Keeps the merged clock strictly increasing

Frames are never merged across sources, so every sample keeps its
per-context attribution.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Sequence, Set

import structlog

from flamefuse.profiling.errors import EmptyMergeError
from flamefuse.profiling.types import (
    Frame,
    MergedProfile,
    Profile,
    ProfileNode,
    SourceLocation,
)

logger = structlog.get_logger(__name__)

UNKNOWN_FRAME = "(unknown)"


class ProfileMerger:
    """Merges profiles from independent contexts."""

    def merge(self, profiles: Sequence[Profile]) -> MergedProfile:
        """
        Merge profiles into one.

        Raises EmptyMergeError when no profile is given; callers that may
        have nothing to merge must check first.
        """
        if not profiles:
            raise EmptyMergeError()

        ordered = sorted(profiles, key=lambda p: p.start_time)
        merged = MergedProfile(
            start_time=min(p.start_time for p in ordered),
            end_time=max(p.end_time for p in ordered),
        )

        used_ids: Set[int] = set()
        node_id_offset = 0
        clock = 0.0

        for profile in ordered:
            time_offset = (profile.start_time - merged.start_time) * 1000
            mapping = self._remap_nodes(profile, node_id_offset, used_ids, merged.nodes)

            for index, original_id in enumerate(profile.samples):
                mapped_id = mapping.get(original_id)
                if mapped_id is None:
                    mapped_id = self._synthesize_node(profile, original_id, used_ids, merged.nodes)
                    mapping[original_id] = mapped_id

                original_delta = profile.time_deltas[index] if index < len(profile.time_deltas) else 0
                adjusted = time_offset + original_delta
                if adjusted <= clock:
                    adjusted = clock + 1
                clock = adjusted

                merged.samples.append(mapped_id)
                merged.time_deltas.append(adjusted)

            node_id_offset += len(profile.nodes)
            if profile.context_id:
                merged.sources.append(profile.context_id)

        logger.debug(
            "Merged profiles",
            profiles=len(ordered),
            nodes=len(merged.nodes),
            samples=len(merged.samples),
        )
        return merged

    def _remap_nodes(
        self,
        profile: Profile,
        node_id_offset: int,
        used_ids: Set[int],
        out: List[ProfileNode],
    ) -> Dict[int, int]:
        mapping: Dict[int, int] = {}
        for node in profile.nodes:
            new_id = node_id_offset + node.id
            if new_id in used_ids:
                fresh_id = self._next_free_id(used_ids)
                logger.warning(
                    "Node id collision during merge",
                    context_id=profile.context_id,
                    node_id=node.id,
                    remapped_id=new_id,
                    assigned_id=fresh_id,
                )
                new_id = fresh_id
            used_ids.add(new_id)
            mapping[node.id] = new_id
            out.append(ProfileNode(frame=replace(node.frame, id=new_id), hit_count=node.hit_count))
        return mapping

    def _synthesize_node(
        self,
        profile: Profile,
        original_id: int,
        used_ids: Set[int],
        out: List[ProfileNode],
    ) -> int:
        new_id = self._next_free_id(used_ids)
        used_ids.add(new_id)
        logger.warning(
            "Sample references unknown node, synthesizing frame",
            context_id=profile.context_id,
            node_id=original_id,
            assigned_id=new_id,
        )
        context_id = profile.context_id or "unknown"
        out.append(ProfileNode(frame=Frame(
            id=new_id,
            function_name=UNKNOWN_FRAME,
            location=SourceLocation(file=f"{context_id}://unknown-{original_id}"),
            context_id=context_id,
        )))
        return new_id

    @staticmethod
    def _next_free_id(used_ids: Set[int]) -> int:
        return max(used_ids) + 1 if used_ids else 0
