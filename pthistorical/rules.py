"""
Maintains the ordered PowerTrack rule set that filters a historical job.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .config import read_document
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

YAML_RULE_SUFFIXES = {'.rules', '.yaml', '.yml'}


class RuleSet:
    """
    An ordered sequence of `{value, tag?}` rules.

    The value is the filter expression; the tag is advisory metadata echoed back
    on matched activities. Order is preserved in the serialized payload.
    """
    def __init__(self, rules: Optional[Iterable[Dict[str, Any]]] = None):
        self._rules: List[Dict[str, str]] = []
        for rule in rules or []:
            self.add_rule(rule.get('value'), rule.get('tag'))

    def add_rule(self, value: str, tag: Optional[str] = None):
        """Appends a rule. A value is required, the tag is optional."""
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Rule value must be a non-empty string, got {value!r}")
        rule = {'value': value}
        if tag is not None:
            rule['tag'] = str(tag)
        self._rules.append(rule)

    def delete_rule(self, value: str) -> int:
        """Removes every rule with this value, regardless of tag. Returns the number removed."""
        before = len(self._rules)
        self._rules = [r for r in self._rules if r['value'] != value]
        return before - len(self._rules)

    def to_list(self) -> List[Dict[str, str]]:
        return [dict(r) for r in self._rules]

    def to_json(self) -> str:
        return json.dumps({'rules': self.to_list()})

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Dict[str, str]]:
        return iter(self.to_list())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RuleSet):
            return NotImplemented
        return self._rules == other._rules

    def __repr__(self) -> str:
        return f"RuleSet({self._rules!r})"

    @classmethod
    def from_file(cls, path: Path) -> 'RuleSet':
        """
        Loads rules from a file.

        `.rules`, `.yaml` and `.yml` files are YAML with a top-level `rules:`
        sequence; anything else is JSON, either `{"rules": [...]}` or a bare list.

        Raises:
            ConfigurationError: If the file is missing, unparseable or holds no rule list.
        """
        path = Path(path)
        data = read_document(path, 'yaml' if path.suffix.lower() in YAML_RULE_SUFFIXES else 'json')

        rules = data.get('rules') if isinstance(data, dict) else data
        if not isinstance(rules, list):
            raise ConfigurationError(f"{path} does not contain a list of rules.")
        try:
            rule_set = cls(r for r in rules if isinstance(r, dict))
        except ValueError as e:
            raise ConfigurationError(f"Invalid rule in {path}: {e}") from e
        skipped = len(rules) - len(rule_set)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed rule entr{'y' if skipped == 1 else 'ies'} in {path}")
        logger.info(f"Loaded {len(rule_set)} rule(s) from {path}")
        return rule_set

