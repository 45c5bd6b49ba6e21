"""Runtime configuration for the npm_hookwatch monitor.

All pipeline components take their settings as explicit constructor
arguments. :class:`WatchConfig` gathers them in one validated object;
:meth:`WatchConfig.from_env` is the only place that reads process
environment variables and is called from the command-line entry point.

Environment variables:
    NPM_REPLICATE_DB_URL, NPM_CHANGES_URL, NPM_REGISTRY_URL,
    CHANGES_LIMIT, POLL_MS, SCAN_DELAY_MS, WORKER_CONCURRENCY,
    WORKER_MAX_JOBS_PER_SECOND, JOB_MAX_ATTEMPTS, TELEGRAM_BOT_TOKEN,
    TELEGRAM_CHAT_ID, DISCORD_WEBHOOK_URL, GITHUB_TOKEN,
    HOOKWATCH_DATA_DIR, HOOKWATCH_MAX_RUNTIME, HOOKWATCH_ALERT_FIRST_PUBLISH
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from npm_hookwatch.script_diff import DEFAULT_SCRIPT_PRIORITY

DEFAULT_REPLICATE_DB_URL = "https://replicate.npmjs.com/"
DEFAULT_CHANGES_URL = "https://replicate.npmjs.com/_changes"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org/"

# Bounds on the feed batch size accepted by the replicate endpoint
MIN_CHANGES_LIMIT = 1
MAX_CHANGES_LIMIT = 5000
MIN_POLL_INTERVAL = 0.25

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


@dataclass
class WatchConfig:
    """Validated settings for one monitor process.

    Attributes:
        replicate_db_url: URL whose ``update_seq`` gives the initial cursor
        changes_url: URL of the replication ``_changes`` feed
        registry_url: Base URL packuments are fetched from
        changes_limit: Rows requested per poll
        poll_interval: Seconds to sleep after an empty poll
        scan_delay: Seconds a queued job stays invisible before it is scanned
        concurrency: Number of concurrent scan workers
        max_jobs_per_second: Rate limit shared by all workers
        max_attempts: Total attempts per job before it is abandoned
        retry_base_delay: First retry backoff in seconds (doubles per attempt)
        shutdown_grace: Seconds in-flight jobs get to finish on shutdown
        data_dir: Directory holding the findings, pending and cursor files
        resume_cursor: Resume from the persisted cursor instead of "now"
        alert_on_first_publish: Alert on scripts in a package's first version
        script_names: Lifecycle scripts to watch, in alert priority order
        telegram_bot_token: Chat-bot credential (sink skipped when unset)
        telegram_chat_id: Chat the bot posts into
        discord_webhook_url: Webhook URL (sink skipped when unset)
        github_token: Issue-tracker credential (sink skipped when unset)
        max_runtime: Stop after this many seconds; None runs forever
    """

    replicate_db_url: str = DEFAULT_REPLICATE_DB_URL
    changes_url: str = DEFAULT_CHANGES_URL
    registry_url: str = DEFAULT_REGISTRY_URL
    changes_limit: int = 200
    poll_interval: float = 1.5
    scan_delay: float = 30.0
    concurrency: int = 5
    max_jobs_per_second: float = 10.0
    max_attempts: int = 3
    retry_base_delay: float = 5.0
    shutdown_grace: float = 30.0
    data_dir: Path = Path("./docs")
    resume_cursor: bool = True
    alert_on_first_publish: bool = True
    script_names: tuple[str, ...] = DEFAULT_SCRIPT_PRIORITY
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    discord_webhook_url: str | None = None
    github_token: str | None = None
    max_runtime: float | None = None

    def __post_init__(self) -> None:
        """Validate and normalise settings.

        Raises:
            ValueError: If a numeric setting is out of range.
        """
        self.data_dir = Path(self.data_dir)
        self.changes_limit = max(MIN_CHANGES_LIMIT, min(MAX_CHANGES_LIMIT, int(self.changes_limit)))
        self.poll_interval = max(MIN_POLL_INTERVAL, float(self.poll_interval))
        if self.scan_delay < 0:
            raise ValueError(f"scan_delay must be >= 0, got {self.scan_delay}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_jobs_per_second <= 0:
            raise ValueError(
                f"max_jobs_per_second must be > 0, got {self.max_jobs_per_second}"
            )
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_runtime is not None and self.max_runtime <= 0:
            raise ValueError(f"max_runtime must be > 0, got {self.max_runtime}")
        if not self.script_names:
            raise ValueError("script_names must name at least one lifecycle script")

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def findings_path(self) -> Path:
        return self.data_dir / "db.json"

    @property
    def pending_path(self) -> Path:
        return self.data_dir / "pending-db.json"

    @property
    def cursor_path(self) -> Path:
        return self.data_dir / "cursor.json"

    # ------------------------------------------------------------------
    # Environment loading
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Mapping[str, str], **overrides: object) -> WatchConfig:
        """Build a WatchConfig from environment variables.

        Args:
            environ: The environment mapping, usually ``os.environ``.
            **overrides: Values that take precedence over the environment
                (e.g. command-line options). ``None`` values are ignored.

        Returns:
            A validated WatchConfig.

        Raises:
            ValueError: If a variable cannot be parsed or is out of range.
        """
        values: dict[str, object] = {}

        def _set(key: str, env_name: str, convert) -> None:
            raw = environ.get(env_name)
            if raw is None or raw.strip() == "":
                return
            try:
                values[key] = convert(raw.strip())
            except ValueError as exc:
                raise ValueError(f"invalid value for {env_name}: {raw!r}") from exc

        _set("replicate_db_url", "NPM_REPLICATE_DB_URL", str)
        _set("changes_url", "NPM_CHANGES_URL", str)
        _set("registry_url", "NPM_REGISTRY_URL", str)
        _set("changes_limit", "CHANGES_LIMIT", int)
        _set("poll_interval", "POLL_MS", lambda raw: float(raw) / 1000.0)
        _set("scan_delay", "SCAN_DELAY_MS", lambda raw: float(raw) / 1000.0)
        _set("concurrency", "WORKER_CONCURRENCY", int)
        _set("max_jobs_per_second", "WORKER_MAX_JOBS_PER_SECOND", float)
        _set("max_attempts", "JOB_MAX_ATTEMPTS", int)
        _set("telegram_bot_token", "TELEGRAM_BOT_TOKEN", str)
        _set("telegram_chat_id", "TELEGRAM_CHAT_ID", str)
        _set("discord_webhook_url", "DISCORD_WEBHOOK_URL", str)
        _set("github_token", "GITHUB_TOKEN", str)
        _set("data_dir", "HOOKWATCH_DATA_DIR", Path)
        _set("max_runtime", "HOOKWATCH_MAX_RUNTIME", float)
        _set("alert_on_first_publish", "HOOKWATCH_ALERT_FIRST_PUBLISH", _parse_bool)

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"not a boolean: {raw!r}")
