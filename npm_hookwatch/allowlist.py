"""Allowlist of known-benign lifecycle script commands.

The diff engine does not know which commands are harmless; it is handed an
``is_benign(command) -> bool`` predicate. :class:`ScriptAllowlist` is the
default implementation: an ordered list of rules, each either a compiled
regular expression or an exact string, matched against the stripped
command.

Public API:
    AllowlistRule: A single allowlist entry
    ScriptAllowlist: Callable rule set usable as the ``is_benign`` predicate
    DEFAULT_ALLOWLIST_RULES: The rules shipped with npm_hookwatch
    BenignPredicate: Type of the predicate accepted by ScriptDiffEngine
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

BenignPredicate = Callable[[str], bool]


@dataclass(frozen=True)
class AllowlistRule:
    """A single known-benign command rule.

    Attributes:
        pattern: Compiled regular expression, or an exact command string
        description: Why this command is considered benign
    """

    pattern: re.Pattern[str] | str
    description: str

    def matches(self, command: str) -> bool:
        """Return True if ``command`` (already stripped) matches this rule."""
        if isinstance(self.pattern, re.Pattern):
            return self.pattern.search(command) is not None
        return command == self.pattern


DEFAULT_ALLOWLIST_RULES: tuple[AllowlistRule, ...] = (
    AllowlistRule(
        pattern=re.compile(r"^npx only-allow (?:pnpm|yarn|npm|bun)$", re.IGNORECASE),
        description="only-allow package manager enforcement",
    ),
)


class ScriptAllowlist:
    """Ordered rule set deciding whether a script command is benign.

    Instances are callable, so they can be passed directly as the
    ``is_benign`` predicate of :class:`~npm_hookwatch.script_diff.ScriptDiffEngine`.

    Example::

        allowlist = ScriptAllowlist.with_defaults([
            AllowlistRule(re.compile(r"^node-gyp rebuild$"), "native addon build"),
        ])
        allowlist("node-gyp rebuild")  # True
    """

    def __init__(self, rules: Iterable[AllowlistRule] = ()) -> None:
        self.rules: tuple[AllowlistRule, ...] = tuple(rules)

    @classmethod
    def with_defaults(cls, extra_rules: Iterable[AllowlistRule] = ()) -> ScriptAllowlist:
        """Return an allowlist holding the default rules plus ``extra_rules``."""
        return cls((*DEFAULT_ALLOWLIST_RULES, *extra_rules))

    def match(self, command: str) -> AllowlistRule | None:
        """Return the first rule matching ``command``, or None.

        Blank commands never match: "no script" is not an allowlisted script.
        """
        if not isinstance(command, str):
            return None
        stripped = command.strip()
        if not stripped:
            return None
        for rule in self.rules:
            if rule.matches(stripped):
                return rule
        return None

    def __call__(self, command: str) -> bool:
        return self.match(command) is not None


def never_benign(command: str) -> bool:
    """Predicate that allowlists nothing."""
    return False
