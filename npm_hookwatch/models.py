"""Data models for npm_hookwatch feed events, packuments, alerts and findings.

This module defines the core dataclasses and enumerations that flow through
the watch pipeline, from a raw replication-feed row to a persisted finding.

Classes:
    AlertAction: Enumeration of detected script transitions (ADDED, CHANGED)
    ChangeEvent: One row from the registry replication feed
    Cursor: Opaque position within the replication feed
    VersionDoc: The manifest fragment of one published version
    Packument: Registry metadata for one package
    ScanJob: A unit of queued work
    Alert: One detected lifecycle script addition or change
    Finding: Persisted, deduplicated record of an alert
    PendingTask: Persisted record of a package waiting to be scanned
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

#: Sequence tokens are opaque; CouchDB-style feeds use either integers or strings.
SequenceToken = Union[str, int]


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class AlertAction(str, Enum):
    """How a lifecycle script differs between two versions.

    - ADDED: the latest version has a script the previous one did not
    - CHANGED: both versions have the script, with different commands
    """

    ADDED = "added"
    CHANGED = "changed"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row from the replication ``_changes`` feed.

    Attributes:
        package_name: The document id, i.e. the npm package name
        sequence_token: The ``last_seq`` of the batch this row arrived in
    """

    package_name: str
    sequence_token: SequenceToken


@dataclass(frozen=True)
class Cursor:
    """Opaque feed position, propagated to the registry unmodified."""

    sequence_token: SequenceToken

    def to_dict(self) -> dict[str, Any]:
        return {"sequence_token": self.sequence_token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Cursor:
        return cls(sequence_token=data["sequence_token"])


@dataclass
class VersionDoc:
    """The part of a published version's manifest that the pipeline reads.

    Attributes:
        scripts: Mapping of npm script name to shell command
    """

    scripts: dict[str, str] = field(default_factory=dict)

    def script(self, name: str) -> str:
        """Return the command for ``name``, or an empty string when absent."""
        return self.scripts.get(name, "")

    @classmethod
    def from_json(cls, data: Any) -> VersionDoc:
        """Build a VersionDoc from one entry of a packument's ``versions`` map.

        Non-dict documents and non-string script values are ignored.
        """
        if not isinstance(data, dict):
            return cls()
        raw_scripts = data.get("scripts")
        if not isinstance(raw_scripts, dict):
            return cls()
        scripts = {
            str(name): command
            for name, command in raw_scripts.items()
            if isinstance(command, str)
        }
        return cls(scripts=scripts)


@dataclass
class Packument:
    """Registry metadata for one package, reduced to what the pipeline needs.

    Attributes:
        name: The package name
        versions: Mapping of version string to its VersionDoc
        dist_tag_latest: The ``dist-tags.latest`` pointer, if any
        repository_url: The declared repository URL, if any
    """

    name: str
    versions: dict[str, VersionDoc] = field(default_factory=dict)
    dist_tag_latest: str | None = None
    repository_url: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any], name: str | None = None) -> Packument:
        """Build a Packument from the registry's JSON document.

        Args:
            data: The decoded packument body.
            name: Fallback package name when the document has none.

        Returns:
            A new Packument instance.
        """
        raw_versions = data.get("versions")
        versions: dict[str, VersionDoc] = {}
        if isinstance(raw_versions, dict):
            versions = {
                str(key): VersionDoc.from_json(doc)
                for key, doc in raw_versions.items()
            }

        dist_tags = data.get("dist-tags")
        tag_latest = dist_tags.get("latest") if isinstance(dist_tags, dict) else None

        # "repository" is either a bare string or {"type": ..., "url": ...}
        repository = data.get("repository")
        if isinstance(repository, dict):
            repository = repository.get("url")

        doc_name = data.get("name")
        return cls(
            name=doc_name if isinstance(doc_name, str) and doc_name else (name or ""),
            versions=versions,
            dist_tag_latest=tag_latest if isinstance(tag_latest, str) else None,
            repository_url=repository if isinstance(repository, str) and repository else None,
        )


@dataclass
class ScanJob:
    """A unit of queued work: scan one package.

    Attributes:
        package_name: The npm package to scan
        enqueued_at: ISO 8601 timestamp of when the producer queued the job
        attempts: Number of times a worker has run this job
    """

    package_name: str
    enqueued_at: str = field(default_factory=utc_now_iso)
    attempts: int = 0


@dataclass(frozen=True)
class Alert:
    """One lifecycle script that was added or changed in the latest version.

    Attributes:
        script_type: The npm script name (e.g. 'postinstall')
        action: Whether the script was added or changed
        new_command: The command in the latest version
        old_command: The command in the previous version (CHANGED only)
    """

    script_type: str
    action: AlertAction
    new_command: str
    old_command: str | None = None

    @property
    def label(self) -> str:
        """Return the capitalised script name, e.g. 'Postinstall'."""
        return self.script_type[:1].upper() + self.script_type[1:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "script_type": self.script_type,
            "action": self.action.value,
            "new_command": self.new_command,
            "old_command": self.old_command,
        }


#: Dedup key of a finding: (package_name, version, script_type).
FindingKey = tuple[str, str, str]


@dataclass
class Finding:
    """Persisted record of one detected script addition or change.

    All fields are immutable after creation except ``delivered``, which is
    set once the alert reached the issue tracker.

    Attributes:
        package_name: The npm package name
        version: The version in which the script appeared or changed
        script_type: The npm script name
        command: The script command in ``version``
        previous_version: The version it was compared against, if any
        action: Whether the script was added or changed
        timestamp: ISO 8601 detection time
        delivered: Whether the authoritative sink accepted the alert
    """

    package_name: str
    version: str
    script_type: str
    command: str
    previous_version: str | None = None
    action: AlertAction = AlertAction.ADDED
    timestamp: str = field(default_factory=utc_now_iso)
    delivered: bool = False

    @property
    def key(self) -> FindingKey:
        """Return the dedup key for this finding."""
        return (self.package_name, self.version, self.script_type)

    @classmethod
    def from_alert(
        cls,
        package_name: str,
        version: str,
        previous_version: str | None,
        alert: Alert,
    ) -> Finding:
        """Create an undelivered finding for ``alert``."""
        return cls(
            package_name=package_name,
            version=version,
            script_type=alert.script_type,
            command=alert.new_command,
            previous_version=previous_version,
            action=alert.action,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize this finding to a JSON-serializable dictionary."""
        return {
            "package_name": self.package_name,
            "version": self.version,
            "script_type": self.script_type,
            "command": self.command,
            "previous_version": self.previous_version,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "delivered": self.delivered,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        """Deserialize a Finding from a dictionary.

        Args:
            data: A dict as produced by ``to_dict()``.

        Returns:
            A new Finding instance.

        Raises:
            KeyError: If required keys are missing from the dict.
            ValueError: If the action value is invalid.
        """
        return cls(
            package_name=data["package_name"],
            version=data["version"],
            script_type=data["script_type"],
            command=data["command"],
            previous_version=data.get("previous_version"),
            action=AlertAction(data.get("action", AlertAction.ADDED.value)),
            timestamp=data.get("timestamp") or utc_now_iso(),
            delivered=bool(data.get("delivered", False)),
        )


@dataclass
class PendingTask:
    """A package the producer has seen but no worker has finished yet."""

    package_name: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"package_name": self.package_name, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingTask:
        return cls(
            package_name=data["package_name"],
            timestamp=data.get("timestamp") or utc_now_iso(),
        )
