"""Structured route template for agent protocol addresses."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple
from urllib.parse import quote


@dataclass(frozen=True)
class RouteTemplate:
    """``{prefix}/{agent_id}/{segment}[/{sub_path}]``.

    Addresses are matched and built segment by segment; the agent id is only
    ever read from, or written to, its own path segment.
    """

    prefix: str = "/agents"
    segment: str = "a2a"

    def build(self, agent_id: str, sub_path: Optional[str] = None) -> str:
        base = f"{self.base()}/{quote(str(agent_id), safe='')}/{self.segment}"
        if sub_path is None:
            return base
        return f"{base}/{sub_path}"

    def match(self, path: str) -> Optional[Tuple[str, Optional[str]]]:
        """Split ``path`` into ``(agent_id, sub_path)`` or return None.

        ``sub_path`` is None when the path stops at the protocol segment and
        ``""`` when it ends with a trailing slash.
        """

        base = self.base()
        if not path.startswith(base + "/"):
            return None
        remainder = path[len(base) + 1:]
        agent_id, sep, rest = remainder.partition("/")
        if not agent_id or not sep:
            return None
        segment, sep, sub_path = rest.partition("/")
        if segment != self.segment:
            return None
        return agent_id, (sub_path if sep else None)

    def base(self) -> str:
        return "/" + self.prefix.strip("/")

    def rewrite_references(self, value: Any, source_id: str, target_id: str) -> Any:
        """Point addresses of ``source_id`` inside a JSON value at ``target_id``.

        Only string occurrences of ``{prefix}/{source_id}/{segment}`` that end
        at a path boundary are rewritten.
        """

        pattern = re.compile(
            re.escape(f"{self.base()}/{quote(str(source_id), safe='')}/{self.segment}") + r"(?=$|[/?#\"'])"
        )
        replacement = f"{self.base()}/{quote(str(target_id), safe='')}/{self.segment}"

        def _walk(node: Any) -> Any:
            if isinstance(node, str):
                return pattern.sub(lambda _m: replacement, node)
            if isinstance(node, list):
                return [_walk(item) for item in node]
            if isinstance(node, dict):
                return {key: _walk(item) for key, item in node.items()}
            return node

        return _walk(value)
