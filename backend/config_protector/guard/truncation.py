"""Table-driven size reduction for the protected document.

Each rule names a dotted path into the document and an operation. ``*`` in a
path matches every value of a mapping (or every item of a list). Rules only
ever remove keys or members, so the result is a subset of the input, and
applying the same table twice gives the same result as applying it once.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, Sequence

from pydantic import BaseModel, Field, model_validator

Operation = Literal["keep_last", "keep_top", "keep_recent", "drop"]

_MS_THRESHOLD = 100_000_000_000


class TruncationRule(BaseModel):
    """One ``{path, op}`` entry of the truncation table."""

    path: str
    op: Operation
    keep: int | None = Field(default=None, ge=0)
    order_by: str = "history"

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check(self) -> "TruncationRule":
        segments = self.segments
        if not segments or any(not part for part in segments):
            raise ValueError(f"invalid rule path: {self.path!r}")
        if segments[-1] == "*":
            raise ValueError(f"rule path must end with a key: {self.path!r}")
        if self.op != "drop" and self.keep is None:
            raise ValueError(f"{self.op} rule for {self.path!r} needs 'keep'")
        return self

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(self.path.split("."))


DEFAULT_RULES: tuple[TruncationRule, ...] = (
    TruncationRule(path="projects.*.history", op="keep_last", keep=10),
    TruncationRule(path="projects.*.cache", op="drop"),
    TruncationRule(path="projects.*.analysis", op="drop"),
    TruncationRule(path="projects.*.ast", op="drop"),
    TruncationRule(path="projects", op="keep_recent", keep=20, order_by="history"),
    TruncationRule(path="tipsHistory", op="keep_top", keep=20),
    TruncationRule(path="sessions", op="keep_last", keep=10),
    TruncationRule(path="testData", op="drop"),
    TruncationRule(path="debug", op="drop"),
    TruncationRule(path="temp", op="drop"),
)


def truncate(doc: dict[str, Any], rules: Sequence[TruncationRule] = DEFAULT_RULES) -> dict[str, Any]:
    """Return a reduced copy of ``doc``; the input is left untouched."""
    reduced = copy.deepcopy(doc)
    for rule in rules:
        _apply(reduced, rule.segments, rule)
    return reduced


def _apply(node: Any, segments: tuple[str, ...], rule: TruncationRule) -> None:
    head, rest = segments[0], segments[1:]
    if head == "*":
        if isinstance(node, dict):
            children: Iterable[Any] = list(node.values())
        elif isinstance(node, list):
            children = list(node)
        else:
            return
        for child in children:
            _apply(child, rest, rule)
        return

    if not isinstance(node, dict) or head not in node:
        return
    if rest:
        _apply(node[head], rest, rule)
        return

    if rule.op == "drop":
        del node[head]
        return
    node[head] = _OPERATIONS[rule.op](node[head], rule)


def _keep_last(value: Any, rule: TruncationRule) -> Any:
    keep = rule.keep or 0
    if not isinstance(value, list) or len(value) <= keep:
        return value
    return value[len(value) - keep :]


def _keep_top(value: Any, rule: TruncationRule) -> Any:
    keep = rule.keep or 0
    if not isinstance(value, dict) or len(value) <= keep:
        return value
    ranked = sorted(enumerate(value.items()), key=lambda item: (-_numeric(item[1][1]), item[0]))
    selected = {key for _, (key, _) in ranked[:keep]}
    return {key: item for key, item in value.items() if key in selected}


def _keep_recent(value: Any, rule: TruncationRule) -> Any:
    keep = rule.keep or 0
    if not isinstance(value, dict) or len(value) <= keep:
        return value

    def recency(entry: tuple[int, tuple[str, Any]]) -> tuple[float, int]:
        index, (_, group) = entry
        return (_newest_timestamp(group, rule.order_by), index)

    ranked = sorted(enumerate(value.items()), key=recency, reverse=True)
    selected = {key for _, (key, _) in ranked[:keep]}
    return {key: item for key, item in value.items() if key in selected}


def _numeric(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return float("-inf")
    return float(value)


def _timestamp(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return float(value) / 1000 if value > _MS_THRESHOLD else float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def _newest_timestamp(group: Any, order_by: str) -> float:
    """Newest ``timestamp`` among the items of ``group[order_by]``."""
    if not isinstance(group, dict):
        return float("-inf")
    entries = group.get(order_by)
    if not isinstance(entries, list):
        return float("-inf")
    newest = float("-inf")
    for entry in entries:
        if isinstance(entry, dict):
            stamp = _timestamp(entry.get("timestamp"))
            if stamp is not None and stamp > newest:
                newest = stamp
    return newest


_OPERATIONS: dict[str, Callable[[Any, TruncationRule], Any]] = {
    "keep_last": _keep_last,
    "keep_top": _keep_top,
    "keep_recent": _keep_recent,
}


__all__ = ["TruncationRule", "DEFAULT_RULES", "truncate"]
