from __future__ import annotations
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import json
import logging
import re

logger = logging.getLogger(__name__)

# transform(field_name, text) -> text; must be pure
FieldTransform = Callable[[str, str], str]


def identity_transform(field_name: str, text: str) -> str:
    return text


def _order_rules(replacements: Dict[str, str]) -> List[Tuple[str, str]]:
    # Longest match first so "Linear Algebra II" wins over "Linear Algebra".
    return sorted(replacements.items(), key=lambda kv: (-len(kv[0]), kv[0]))


class ReplacementTransform:
    """Rule-table text shortening: literal substitutions, then regex removals."""

    def __init__(
        self,
        replacements: Optional[Dict[str, str]] = None,
        remove_patterns: Sequence[str] = (),
        fields: Iterable[str] = ("summary",),
    ) -> None:
        self.rules = _order_rules(replacements or {})
        self.remove_patterns = [re.compile(p) for p in remove_patterns]
        self.fields = frozenset(fields)

    def __call__(self, field_name: str, text: str) -> str:
        if field_name not in self.fields:
            return text
        result = text
        for old, new in self.rules:
            result = result.replace(old, new)
        for pattern in self.remove_patterns:
            result = pattern.sub("", result)
        return " ".join(result.split())


def load_replacements(path: Optional[str]) -> Dict[str, str]:
    """Read a JSON object of replacements; a missing or broken file yields no rules."""
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        logger.info("No replacement table at %s", path)
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning("Replacement table %s is not valid JSON: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Replacement table %s must be a JSON object", path)
        return {}
    return {str(k): str(v) for k, v in data.items()}


def compose(*transforms: FieldTransform) -> FieldTransform:
    def _composed(field_name: str, text: str) -> str:
        for t in transforms:
            text = t(field_name, text)
        return text

    return _composed
