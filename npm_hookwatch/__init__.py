"""npm_hookwatch - Watch the npm publish stream for new or changed install scripts.

This package follows the npm registry's replication feed, fetches the
packument of every package that changes, and flags version transitions that
add or modify an install-time lifecycle script (preinstall, install,
postinstall). Detected changes are persisted as findings and fanned out to
chat, webhook and issue-tracker sinks.

Public API:
    __version__: Current package version string
    __all__: Exported public symbols

Example usage::

    from npm_hookwatch import __version__
    print(f"npm_hookwatch v{__version__}")
"""

__version__ = "0.2.0"
__author__ = "npm-hookwatch contributors"
__license__ = "MIT"

__all__ = ["__version__", "__author__", "__license__"]
