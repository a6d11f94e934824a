"""Raw-sensor dependency extraction for derived sensor formulas."""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from services.formula import FormulaEvaluator

FALLBACK_DEPENDENCY = "pressure:barometer"
TIMESTAMP_FIELD = "d"

_SENSOR_KEY = re.compile(r"^[A-Za-z0-9_.\-]+:[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class ResolvedDependencies:
    dependency_keys: List[str] = field(default_factory=list)
    field_mapping: Dict[str, str] = field(default_factory=dict)


def is_sensor_key(value: object) -> bool:
    return isinstance(value, str) and bool(_SENSOR_KEY.match(value))


def short_field_name(sensor_key: str) -> str:
    category, separator, name = sensor_key.partition(":")
    return name if separator else category


def _literal_key(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Constant) and is_sensor_key(node.value):
        return node.value
    return None


class DependencyResolver:
    """Reads the raw sensor keys a formula looks up.

    A key counts when it appears as a literal subscript (``data['cat:name']``,
    ``row['cat:name']``) or as a literal argument of a library helper. Keys
    built at runtime cannot be seen. Formulas reading nothing still get the
    barometer so that every derived series has timestamps to align on.
    """

    def __init__(self, evaluator: Optional[FormulaEvaluator] = None) -> None:
        self.evaluator = evaluator or FormulaEvaluator()

    def resolve(self, formula_source: str) -> ResolvedDependencies:
        compiled = self.evaluator.compile(formula_source)

        found: List[Tuple[int, int, str]] = []
        for node in ast.walk(compiled.tree):
            candidates: List[ast.AST] = []
            if isinstance(node, ast.Subscript):
                candidates.append(node.slice)
            elif isinstance(node, ast.Call):
                candidates.extend(node.args)
                candidates.extend(keyword.value for keyword in node.keywords)
            for candidate in candidates:
                key = _literal_key(candidate)
                if key is not None:
                    found.append((candidate.lineno, candidate.col_offset, key))

        dependency_keys: List[str] = []
        for _line, _column, key in sorted(found):
            if key not in dependency_keys:
                dependency_keys.append(key)
        if not dependency_keys:
            dependency_keys.append(FALLBACK_DEPENDENCY)

        field_mapping: Dict[str, str] = {TIMESTAMP_FIELD: "timestamp"}
        for key in dependency_keys:
            field_mapping[key] = short_field_name(key)

        return ResolvedDependencies(dependency_keys=dependency_keys, field_mapping=field_mapping)
