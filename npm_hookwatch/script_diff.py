"""Lifecycle script diffing between two published versions of a package.

This module compares the install-time lifecycle scripts of a package's
latest version against its previous version and reports every script that
was added or whose command changed. Such transitions are the moment a
compromised maintainer account turns a trusted package into a dropper,
because npm runs these scripts automatically on install.

Classification, per watched script name:

- latest set, previous blank or absent   -> ADDED
- latest set, previous set and different -> CHANGED
- latest blank, or equal to previous     -> no alert

An allowlist predicate is applied before emission: a benign latest command
suppresses the alert, and a CHANGED whose previous command was benign is
reported as ADDED, since the baseline was effectively "no script".

Public API:
    ScriptDiffEngine: Main class implementing the diff
    LIFECYCLE_HOOKS: Script names npm executes automatically on install
    BUILD_HOOKS: Build hook names that can be watched in addition
    DEFAULT_SCRIPT_PRIORITY: Default watched names, in alert order
"""

from __future__ import annotations

from collections.abc import Iterable

from npm_hookwatch.allowlist import BenignPredicate, never_benign
from npm_hookwatch.models import Alert, AlertAction, VersionDoc

# ---------------------------------------------------------------------------
# Script names
# ---------------------------------------------------------------------------

LIFECYCLE_HOOKS: frozenset[str] = frozenset([
    "preinstall",
    "install",
    "postinstall",
])

BUILD_HOOKS: frozenset[str] = frozenset([
    "prebuild",
    "postbuild",
])

DEFAULT_SCRIPT_PRIORITY: tuple[str, ...] = ("preinstall", "install", "postinstall")


def _is_blank(command: str | None) -> bool:
    return command is None or not command.strip()


class ScriptDiffEngine:
    """Compare lifecycle scripts between two version documents.

    The engine is stateless and deterministic: identical inputs always
    produce identical alert lists, in the configured priority order.

    Attributes:
        script_names: Watched script names, in the order alerts are emitted
        is_benign: Allowlist predicate applied to commands
        alert_on_first_publish: Whether a first-ever version with a script
            (no previous version to compare with) produces ADDED alerts

    Example::

        engine = ScriptDiffEngine(is_benign=ScriptAllowlist.with_defaults())
        alerts = engine.diff(latest_doc, previous_doc)
        for alert in alerts:
            print(alert.script_type, alert.action.value, alert.new_command)
    """

    def __init__(
        self,
        script_names: Iterable[str] = DEFAULT_SCRIPT_PRIORITY,
        is_benign: BenignPredicate = never_benign,
        alert_on_first_publish: bool = True,
    ) -> None:
        """Initialise the engine.

        Args:
            script_names: Script names to compare, highest priority first.
                Duplicates are dropped. Defaults to preinstall, install,
                postinstall.
            is_benign: Predicate returning True for known-benign commands.
                Defaults to a predicate that allowlists nothing.
            alert_on_first_publish: When False, ``diff`` returns no alerts
                if there is no previous version. Defaults to True.

        Raises:
            ValueError: If no script names are given.
        """
        names = tuple(dict.fromkeys(script_names))
        if not names:
            raise ValueError("script_names must contain at least one script name")
        self.script_names: tuple[str, ...] = names
        self.is_benign: BenignPredicate = is_benign
        self.alert_on_first_publish: bool = alert_on_first_publish

    def diff(
        self,
        latest_doc: VersionDoc,
        previous_doc: VersionDoc | None = None,
    ) -> list[Alert]:
        """Return the alerts for scripts added or changed in ``latest_doc``.

        Args:
            latest_doc: Manifest fragment of the latest version.
            previous_doc: Manifest fragment of the previous version, or None
                when the package has only one valid version.

        Returns:
            Alerts in ``script_names`` order; empty when nothing changed.
        """
        if previous_doc is None and not self.alert_on_first_publish:
            return []

        alerts: list[Alert] = []
        for name in self.script_names:
            alert = self._compare(
                name,
                latest_doc.script(name),
                previous_doc.script(name) if previous_doc is not None else "",
            )
            if alert is not None:
                alerts.append(alert)
        return alerts

    def _compare(self, name: str, new_command: str, old_command: str) -> Alert | None:
        """Classify one script name; None means no alert."""
        if _is_blank(new_command) or new_command == old_command:
            return None
        if self.is_benign(new_command):
            return None
        if _is_blank(old_command) or self.is_benign(old_command):
            return Alert(script_type=name, action=AlertAction.ADDED, new_command=new_command)
        return Alert(
            script_type=name,
            action=AlertAction.CHANGED,
            new_command=new_command,
            old_command=old_command,
        )
