"""``{{ expression }}`` resolution in stage configuration.

Stage configuration is resolved just before a stage is dispatched, against:
    - ``input``  - the execution input
    - ``stages`` - outputs of completed stages, keyed by stage id
    - ``execution`` - ``id`` and ``workflow_id`` of the running execution

Supported expressions:
    - dotted paths with list indexes: ``{{ stages.generate_outline.modules[0] }}``
    - filters: ``{{ input.level | upper }}`` (``str``, ``int``, ``upper``,
      ``lower``, ``default``, ``json``)
    - equality tests: ``{{ input.level == "advanced" }}``

A string that is exactly one expression resolves to the raw value, keeping
its type; mixed text is interpolated. Unknown paths resolve to None.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from contentflow.workflow.models import StageStatus, WorkflowExecution

logger = logging.getLogger("contentflow.workflow.expressions")

_EXPR_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_SINGLE_EXPR_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_FILTER_RE = re.compile(r"^(.+?)\s*\|\s*([a-zA-Z_]\w*)$")
_EQUALITY_RE = re.compile(r"^(.+?)\s*(==|!=)\s*(.+)$")
_SEGMENT_RE = re.compile(r"([a-zA-Z_][\w-]*)(?:\[(\d+)\])?")

_FILTERS: dict[str, Callable[[Any], Any]] = {
    "str": lambda v: "" if v is None else str(v),
    "int": lambda v: int(v) if v is not None else 0,
    "upper": lambda v: str(v).upper() if v is not None else "",
    "lower": lambda v: str(v).lower() if v is not None else "",
    "default": lambda v: "" if v is None else v,
    "json": lambda v: json.dumps(v, default=str),
}


class ExpressionResolver:
    """Resolves expressions against a namespace of named roots."""

    def __init__(self, namespace: dict[str, Any]):
        self._namespace = namespace

    @classmethod
    def for_execution(cls, execution: WorkflowExecution) -> ExpressionResolver:
        return cls({
            "input": execution.input,
            "stages": {
                s.stage_id: s.output
                for s in execution.stages
                if s.status == StageStatus.COMPLETED
            },
            "execution": {"id": execution.id, "workflow_id": execution.workflow_id},
        })

    def resolve(self, value: Any) -> Any:
        """Recursively resolve strings inside dicts and lists."""
        if isinstance(value, str):
            return self._resolve_text(value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def evaluate(self, expr: str) -> Any:
        """Evaluate one expression (without the braces)."""
        match = _FILTER_RE.match(expr)
        if match:
            return self._apply_filter(match.group(2), self._lookup(match.group(1)))

        match = _EQUALITY_RE.match(expr)
        if match:
            lhs = self._lookup(match.group(1))
            rhs = _literal(match.group(3).strip())
            return lhs == rhs if match.group(2) == "==" else lhs != rhs

        return self._lookup(expr)

    def _resolve_text(self, text: str) -> Any:
        if "{{" not in text:
            return text
        single = _SINGLE_EXPR_RE.fullmatch(text.strip())
        if single:
            return self.evaluate(single.group(1))

        def _substitute(m: re.Match) -> str:
            result = self.evaluate(m.group(1))
            return "" if result is None else str(result)

        return _EXPR_RE.sub(_substitute, text)

    def _lookup(self, path: str) -> Any:
        current: Any = self._namespace
        for segment in path.strip().split("."):
            match = _SEGMENT_RE.fullmatch(segment)
            if match is None or not isinstance(current, dict):
                return None
            current = current.get(match.group(1))
            if match.group(2) is not None:
                index = int(match.group(2))
                if not isinstance(current, (list, tuple)) or index >= len(current):
                    return None
                current = current[index]
        return current

    @staticmethod
    def _apply_filter(name: str, value: Any) -> Any:
        fn = _FILTERS.get(name)
        if fn is None:
            logger.warning("Unknown expression filter: '%s'", name)
            return value
        try:
            return fn(value)
        except (TypeError, ValueError):
            logger.warning("Filter '%s' failed on value %r", name, value)
            return value


def _literal(raw: str) -> Any:
    if raw in ("null", "None"):
        return None
    if raw in ("true", "True"):
        return True
    if raw in ("false", "False"):
        return False
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1]
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw
