# chatcore/providers/stream_handlers.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional


def parse_tool_arguments(raw: str) -> Optional[Dict[str, Any]]:
    """Return parsed arguments once the streamed JSON is complete, else None."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class ToolCallAssembler:
    """Collects streamed ``delta.tool_calls`` fragments into whole tool calls.

    Providers send the name once and the arguments as string pieces keyed by
    ``index``. ``feed`` returns the full current state of every call, which
    downstream code treats as a replace-wholesale snapshot.
    """

    def __init__(self) -> None:
        self._calls: Dict[int, Dict[str, Any]] = {}

    def feed(self, fragments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for pos, frag in enumerate(fragments or []):
            if not isinstance(frag, dict):
                continue
            idx = frag.get("index")
            if not isinstance(idx, int):
                idx = pos
            call = self._calls.setdefault(idx, {"id": None, "name": "", "arguments": ""})
            if frag.get("id"):
                call["id"] = frag["id"]
            fn = frag.get("function") or {}
            if fn.get("name"):
                call["name"] = fn["name"]
            if fn.get("arguments"):
                call["arguments"] += fn["arguments"]
        return self.snapshot()

    def snapshot(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for idx in sorted(self._calls):
            call = self._calls[idx]
            args = parse_tool_arguments(call["arguments"])
            out.append(
                {
                    "id": call["id"],
                    "name": call["name"],
                    "arguments": args if args is not None else call["arguments"],
                    "status": "complete" if args is not None else "streaming",
                }
            )
        return out

    def __bool__(self) -> bool:
        return bool(self._calls)
