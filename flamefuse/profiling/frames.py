"""
flamefuse Frame Registry

Deduplicates call-frame identities within a single aggregation run.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from flamefuse.profiling.types import (
    Frame,
    FrameKey,
    Marker,
    SourceLocation,
    WILDCARD_LOCATION,
)


class FrameRegistry:
    """
    Assigns stable integer ids to frames keyed by
    (context_id, function_name, file, line, col).

    Ids are dense and follow first-seen order. Create one registry per
    aggregation; nothing is shared between runs.
    """

    def __init__(self):
        self._frames: List[Frame] = []
        self._by_key: Dict[FrameKey, int] = {}
        self._script_ids: Dict[str, str] = {}

    def intern(
        self,
        context_id: str,
        function_name: str,
        location: Optional[SourceLocation] = None,
        marker: Optional[Marker] = None,
        display_name: str = "",
    ) -> int:
        """Return the id for this identity, creating the frame on first sight."""
        location = location or WILDCARD_LOCATION
        key = FrameKey(
            context_id=context_id,
            function_name=function_name,
            file=location.file,
            line=location.line,
            col=location.col,
        )

        frame_id = self._by_key.get(key)
        if frame_id is not None:
            return frame_id

        frame_id = len(self._frames)
        self._frames.append(Frame(
            id=frame_id,
            function_name=function_name,
            location=location,
            context_id=context_id,
            marker=marker,
            display_name=display_name,
            script_id=self.script_id(location.file),
        ))
        self._by_key[key] = frame_id
        return frame_id

    def script_id(self, url: str) -> str:
        """Script id for a url, assigned in first-seen order."""
        script_id = self._script_ids.get(url)
        if script_id is None:
            script_id = f"script-{len(self._script_ids)}"
            self._script_ids[url] = script_id
        return script_id

    def get(self, frame_id: int) -> Frame:
        return self._frames[frame_id]

    def lookup(self, key: FrameKey) -> Optional[int]:
        return self._by_key.get(key)

    @property
    def frames(self) -> List[Frame]:
        return list(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)
