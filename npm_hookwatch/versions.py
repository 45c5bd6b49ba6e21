"""Latest / previous version selection for a packument.

Versions are ordered by semantic-version precedence using the
``semantic_version`` library. Keys of the packument's ``versions`` map
that are not strict semver (``1.0``, ``latest``, garbage) are ignored.

The ``dist-tags.latest`` pointer is not trusted to name the newest
publish: it can lag behind the highest version (or point to a version that
is missing from the map), and a lagging tag would hide a freshly published
script. It is reported alongside the resolution so callers can log the
discrepancy.

Public API:
    Resolution: Result of resolving a packument
    VersionResolver: Resolver class
    parse_version: Parse a version string, returning None when invalid
"""

from __future__ import annotations

from dataclasses import dataclass

import semantic_version

from npm_hookwatch.models import Packument


def parse_version(raw: str) -> semantic_version.Version | None:
    """Parse ``raw`` as a strict semantic version.

    Args:
        raw: A version string such as ``1.2.3`` or ``2.0.0-beta.1``.

    Returns:
        The parsed Version, or None when ``raw`` is not valid semver.
    """
    if not isinstance(raw, str):
        return None
    try:
        return semantic_version.Version(raw.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a packument's versions.

    Attributes:
        latest: Highest valid version, or None when there is none
        previous: Highest valid version strictly below ``latest``, or None
        dist_tag_latest: The packument's ``dist-tags.latest`` value, if any
        tag_lags: True when the dist-tag is missing from the versions map,
            unparseable, or lower than ``latest``
    """

    latest: str | None
    previous: str | None
    dist_tag_latest: str | None = None
    tag_lags: bool = False

    @property
    def is_empty(self) -> bool:
        """Return True when the packument has no valid version to scan."""
        return self.latest is None


class VersionResolver:
    """Pick the ``latest`` and ``previous`` versions of a packument.

    Example::

        resolution = VersionResolver().resolve(packument)
        if not resolution.is_empty:
            print(resolution.previous, "->", resolution.latest)
    """

    def sorted_versions(self, packument: Packument) -> list[str]:
        """Return the valid version keys of ``packument``, highest first.

        Keys with equal precedence (differing only in build metadata) keep
        a stable order by their string form.
        """
        parsed: list[tuple[semantic_version.Version, str]] = []
        for key in packument.versions:
            version = parse_version(key)
            if version is not None:
                parsed.append((version, key))
        parsed.sort(key=lambda pair: pair[1])
        parsed.sort(key=lambda pair: pair[0], reverse=True)
        return [key for _, key in parsed]

    def resolve(self, packument: Packument) -> Resolution:
        """Resolve ``latest`` and ``previous`` for ``packument``.

        Args:
            packument: The package metadata to inspect.

        Returns:
            A Resolution. Both versions are None when no key parses; a
            package with a single valid version has ``previous`` None.
        """
        ordered = self.sorted_versions(packument)
        tag = packument.dist_tag_latest

        if not ordered:
            return Resolution(latest=None, previous=None, dist_tag_latest=tag, tag_lags=tag is not None)

        latest = ordered[0]
        latest_version = parse_version(latest)
        previous = next(
            (key for key in ordered[1:] if parse_version(key) < latest_version),
            None,
        )
        return Resolution(
            latest=latest,
            previous=previous,
            dist_tag_latest=tag,
            tag_lags=self._tag_lags(tag, latest_version, packument),
        )

    @staticmethod
    def _tag_lags(
        tag: str | None,
        latest_version: semantic_version.Version,
        packument: Packument,
    ) -> bool:
        if tag is None:
            return False
        if tag not in packument.versions:
            return True
        tag_version = parse_version(tag)
        return tag_version is None or tag_version < latest_version
