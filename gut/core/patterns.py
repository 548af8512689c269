"""Pattern/replacement engine.

Rules are applied in declaration order to file contents and to path
segments. A rule's replacement string may reference replacement values as
``${key}``; regex rules may also reference groups as ``\\g<name>`` or
``\\g<1>``. Everything else in the replacement string is literal.
"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from gut.core.errors import InvalidState, MissingReplacement

# a key ends at the last "}" of a closing run, so "${{{NAME}}}" names "{{NAME}}"
_TOKEN_RE = re.compile(r"\$\{(?P<key>.+?)\}(?!\})|\\g<(?P<group>\w+)>")


@dataclass(frozen=True)
class PatternRule:
    """One (matcher, replacement template) pair."""

    match: str
    replace: str
    regex: bool = False
    ignore_case: bool = False

    @classmethod
    def placeholder(cls, placeholder: str) -> "PatternRule":
        """Rule replacing ``placeholder`` with the value stored under the same key."""
        return cls(match=placeholder, replace="${" + placeholder + "}")

    def compile(self) -> "re.Pattern":
        flags = re.IGNORECASE if self.ignore_case else 0
        source = self.match if self.regex else re.escape(self.match)
        try:
            compiled = re.compile(source, flags)
        except re.error as exc:
            raise InvalidState(f"Invalid regex pattern {self.match!r}: {exc}")

        if self.regex:
            for group in self.groups():
                known = int(group) <= compiled.groups if group.isdigit() else group in compiled.groupindex
                if not known:
                    raise InvalidState(
                        f"Replacement {self.replace!r} refers to group {group!r}, "
                        f"which {self.match!r} does not define"
                    )
        return compiled

    def keys(self) -> List[str]:
        """Replacement keys referenced by this rule, in order of appearance."""
        return [m.group('key') for m in _TOKEN_RE.finditer(self.replace) if m.group('key')]

    def groups(self) -> List[str]:
        return [m.group('group') for m in _TOKEN_RE.finditer(self.replace) if m.group('group')]

    def to_dict(self) -> dict:
        return {
            'match': self.match,
            'replace': self.replace,
            'regex': self.regex,
            'ignore_case': self.ignore_case,
        }

    @classmethod
    def from_dict(cls, data) -> "PatternRule":
        if isinstance(data, str):
            # bare placeholder form: "- __UND__"
            return cls.placeholder(data)
        if not isinstance(data, dict) or 'match' not in data:
            raise ValueError(f"expected a mapping with 'match', got {data!r}")
        return cls(
            match=str(data['match']),
            replace=str(data.get('replace', "${" + str(data['match']) + "}")),
            regex=bool(data.get('regex', False)),
            ignore_case=bool(data.get('ignore_case', False)),
        )


class PatternEngine:
    """Applies an ordered rule list with a replacement map.

    Pure and side-effect free: safe to share across threads.
    """

    def __init__(self, rules: Iterable[PatternRule], replacements: Dict[str, str]):
        self.rules = list(rules)
        self.replacements = dict(replacements)
        self._compiled = [(rule, rule.compile()) for rule in self.rules]

    def required_keys(self) -> List[str]:
        """All replacement keys referenced by the rules, without duplicates."""
        keys = []
        for rule in self.rules:
            for key in rule.keys():
                if key not in keys:
                    keys.append(key)
        return keys

    def missing_keys(self) -> List[str]:
        return [key for key in self.required_keys() if key not in self.replacements]

    def rewrite(self, text: str) -> str:
        """Apply every rule in order to ``text``.

        Raises:
            MissingReplacement: If a rule that matches references an unset key
        """
        for rule, compiled in self._compiled:
            text = compiled.sub(lambda m, r=rule: self._expand(r, m), text)
        return text

    def rewrite_path(self, path: str) -> str:
        """Rewrite a repository-relative path segment by segment."""
        segments = [self.rewrite(segment) for segment in path.split("/")]
        for segment in segments:
            if segment in ("", ".", "..") or "/" in segment:
                raise InvalidState(f"Rewriting {path!r} produced an invalid path segment {segment!r}")
        return "/".join(segments)

    def _expand(self, rule: PatternRule, match: "re.Match") -> str:
        def token(m: "re.Match") -> str:
            key = m.group('key')
            if key is not None:
                if key not in self.replacements:
                    raise MissingReplacement(key)
                return self.replacements[key]
            group = m.group('group')
            if not rule.regex:
                return m.group(0)
            value = match.group(int(group) if group.isdigit() else group)
            return value or ""

        return _TOKEN_RE.sub(token, rule.replace)


def parse_assignments(items: Optional[List[str]]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` strings from the command line."""
    result = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise InvalidState(f"Expected KEY=VALUE, got {item!r}")
        result[key] = value
    return result
