"""Alert fan-out to chat, webhook and issue-tracker sinks.

Each channel is a :class:`NotificationSink`: it renders an alert batch into
one or more channel-specific messages and sends them. Rendering is kept
apart from delivery so the dispatcher can isolate failures uniformly:

- Telegram (chat bot) and Discord (webhook) receive one combined message
  per alert batch.
- GitHub (issue tracker) receives one issue per alert, so each script
  change can be investigated and closed independently. It is the
  authoritative sink: the alerts it accepted are reported back so the
  matching findings can be marked as delivered.

:class:`AlertDispatcher` runs every sink concurrently, bounds each send
with its own timeout, and logs and swallows any failure: one broken sink
never blocks another sink or the scan that produced the alerts.

Public API:
    AlertContext: Everything a sink needs to render an alert batch
    RenderedMessage: One channel-ready message
    NotificationSink: Abstract sink capability
    TelegramSink, DiscordSink, GitHubIssueSink: Concrete sinks
    AlertDispatcher: Failure-isolating fan-out
    build_sinks: Build the sinks whose credentials are configured
    parse_github_repository: Extract (owner, repo) from a repository URL
"""

from __future__ import annotations

import abc
import asyncio
import html
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from npm_hookwatch.errors import ConfigurationError, SinkDeliveryError
from npm_hookwatch.models import Alert, AlertAction, Packument
from npm_hookwatch.packument import npm_package_url, truncate_body

logger = structlog.get_logger(__name__)

#: Per-send deadline, in seconds.
DEFAULT_SINK_TIMEOUT = 10.0

# Longest command quoted verbatim in a chat message
_COMMAND_TRUNCATE = 512
_DISCORD_CONTENT_LIMIT = 2000
_TELEGRAM_TEXT_LIMIT = 4096
# Telegram text budget: markup around each alert, the floor per quoted
# command, and room kept for the "more changes" line
_TELEGRAM_PART_OVERHEAD = 96
_TELEGRAM_MIN_COMMAND = 48
_TELEGRAM_OVERFLOW_RESERVE = 64
_TRUNCATED_MARK = "...[truncated]"

# scp-like git remote: git@github.com:owner/repo.git
_SCP_REMOTE_RE = re.compile(r"^[\w.-]+@(?P<host>[\w.-]+):(?P<path>.+)$")
# npm shorthand: github:owner/repo or owner/repo
_SHORTHAND_RE = re.compile(r"^(?:github:)?(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)$")


# ---------------------------------------------------------------------------
# Rendering inputs / outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertContext:
    """An alert batch for one package version transition.

    Attributes:
        package_name: The npm package name
        latest: The version the alerts were detected in
        previous: The version it was compared against, if any
        alerts: The detected script changes, in priority order
        packument: The package metadata (repository URL for issues)
    """

    package_name: str
    latest: str
    previous: str | None
    alerts: tuple[Alert, ...]
    packument: Packument

    @property
    def change_summary(self) -> str:
        count = len(self.alerts)
        return f"{count} script change{'s' if count != 1 else ''} detected"


@dataclass(frozen=True)
class RenderedMessage:
    """One message ready to be sent by a sink.

    Attributes:
        payload: JSON body of the request
        alerts: The alerts this message covers
        target: Channel-specific destination (issue repo, chat id, ...)
    """

    payload: dict[str, Any]
    alerts: tuple[Alert, ...]
    target: str = ""


def truncate_command(command: str, max_chars: int = _COMMAND_TRUNCATE) -> str:
    """Truncate a script command for display, marking the cut."""
    if len(command) <= max_chars:
        return command
    return command[:max_chars] + _TRUNCATED_MARK


def escape_within(command: str, max_chars: int) -> str:
    """HTML-escape ``command``, cutting whole characters to fit ``max_chars``.

    The cut never splits an entity such as ``&lt;``.
    """
    escaped = html.escape(command, quote=False)
    if len(escaped) <= max_chars:
        return escaped
    kept: list[str] = []
    used = len(_TRUNCATED_MARK)
    for char in command:
        piece = html.escape(char, quote=False)
        if used + len(piece) > max_chars:
            break
        kept.append(piece)
        used += len(piece)
    return "".join(kept) + _TRUNCATED_MARK


def parse_github_repository(repository_url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from a package's declared repository URL.

    Accepts ``https://github.com/o/r``, ``git+https://github.com/o/r.git``,
    ``git://github.com/o/r.git``, ``git+ssh://git@github.com/o/r.git``,
    ``git@github.com:o/r.git``, ``github:o/r`` and ``o/r``. Path segments
    after the repository name are ignored; a trailing ``.git`` is stripped.

    Raises:
        ConfigurationError: If the URL does not point at a GitHub repository.
    """
    raw = (repository_url or "").strip()
    if not raw:
        raise ConfigurationError("package declares no repository URL")

    shorthand = _SHORTHAND_RE.match(raw)
    if shorthand:
        return shorthand.group("owner"), _strip_git_suffix(shorthand.group("repo"))

    scp = _SCP_REMOTE_RE.match(raw)
    if scp and "://" not in raw:
        host, path = scp.group("host"), scp.group("path")
    else:
        parts = urlsplit(raw)
        host, path = parts.hostname or "", parts.path

    if host.lower() not in ("github.com", "www.github.com"):
        raise ConfigurationError(f"repository is not hosted on GitHub: {repository_url}")

    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:
        raise ConfigurationError(f"repository URL lacks owner/repo segments: {repository_url}")
    owner, repo = segments[0], _strip_git_suffix(segments[1])
    if not owner or not repo:
        raise ConfigurationError(f"repository URL lacks owner/repo segments: {repository_url}")
    return owner, repo


def _strip_git_suffix(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


# ---------------------------------------------------------------------------
# Sink capability
# ---------------------------------------------------------------------------


class NotificationSink(abc.ABC):
    """A notification channel.

    Attributes:
        name: Short identifier used in logs
        authoritative: Whether delivery to this sink marks findings delivered
    """

    name: str = "sink"
    authoritative: bool = False

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @abc.abstractmethod
    def render(self, context: AlertContext) -> list[RenderedMessage]:
        """Render ``context`` into channel messages.

        Raises:
            ConfigurationError: If this sink cannot address the package.
        """

    @abc.abstractmethod
    async def send(self, message: RenderedMessage) -> None:
        """Deliver one message.

        Raises:
            SinkDeliveryError: If the channel rejected or never received it.
        """

    async def _post_json(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise SinkDeliveryError(self.name, f"request failed: {exc}") from exc
        if not response.is_success:
            raise SinkDeliveryError(
                self.name,
                f"HTTP {response.status_code}: {truncate_body(response.text)}",
            )
        return response


class TelegramSink(NotificationSink):
    """Telegram bot posting one HTML message per alert batch."""

    name = "telegram"

    def __init__(
        self,
        client: httpx.AsyncClient,
        bot_token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
    ) -> None:
        super().__init__(client)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")

    def render(self, context: AlertContext) -> list[RenderedMessage]:
        name = html.escape(context.package_name, quote=False)
        header = (
            f"\U0001f6a8 <b>Security Alert: {context.change_summary}</b>\n\n"
            f"Package: <code>{name}@{html.escape(context.latest, quote=False)}</code>\n"
            f'<a href="{npm_package_url(context.package_name)}">View on npm</a>\n'
            f"Previous version: {html.escape(context.previous or 'none', quote=False)}\n\n"
        )
        commands = sum(1 if alert.action is AlertAction.ADDED else 2 for alert in context.alerts)
        budget = max(
            _TELEGRAM_MIN_COMMAND,
            (
                _TELEGRAM_TEXT_LIMIT
                - _TELEGRAM_OVERFLOW_RESERVE
                - len(header)
                - _TELEGRAM_PART_OVERHEAD * len(context.alerts)
            )
            // max(commands, 1),
        )

        # Whole parts only, so every <code> tag stays closed
        parts: list[str] = []
        length = len(header)
        for index, alert in enumerate(context.alerts):
            part = self._render_alert(alert, budget)
            if length + len(part) + 2 > _TELEGRAM_TEXT_LIMIT - _TELEGRAM_OVERFLOW_RESERVE:
                parts.append(f"… and {len(context.alerts) - index} more change(s) not shown")
                break
            parts.append(part)
            length += len(part) + 2

        payload = {
            "chat_id": self.chat_id,
            "text": header + "\n\n".join(parts),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        return [RenderedMessage(payload=payload, alerts=context.alerts, target=self.chat_id)]

    @staticmethod
    def _render_alert(alert: Alert, budget: int) -> str:
        new_cmd = escape_within(truncate_command(alert.new_command), budget)
        if alert.action is AlertAction.ADDED:
            return f"• <b>{alert.label} added:</b> <code>{new_cmd}</code>"
        old_cmd = escape_within(truncate_command(alert.old_command or ""), budget)
        return (
            f"• <b>{alert.label} changed:</b>\n"
            f"  Previous: <code>{old_cmd}</code>\n"
            f"  New: <code>{new_cmd}</code>"
        )

    async def send(self, message: RenderedMessage) -> None:
        await self._post_json(f"{self.api_base}/bot{self.bot_token}/sendMessage", message.payload)


class DiscordSink(NotificationSink):
    """Discord webhook posting one markdown message per alert batch."""

    name = "discord"

    def __init__(self, client: httpx.AsyncClient, webhook_url: str) -> None:
        super().__init__(client)
        self.webhook_url = webhook_url

    def render(self, context: AlertContext) -> list[RenderedMessage]:
        parts: list[str] = []
        for alert in context.alerts:
            new_cmd = truncate_command(alert.new_command, 400)
            if alert.action is AlertAction.ADDED:
                parts.append(f"• **{alert.label} added:** ```{new_cmd}```")
            else:
                old_cmd = truncate_command(alert.old_command or "", 400)
                parts.append(
                    f"• **{alert.label} changed:**\n"
                    f"  Previous: ```{old_cmd}```\n"
                    f"  New: ```{new_cmd}```"
                )

        content = (
            f"\U0001f6a8 **Security Alert: {context.change_summary}**\n\n"
            f"**Package:** `{context.package_name}@{context.latest}`\n"
            f"**Previous version:** {context.previous or 'none'}\n\n"
            + "\n\n".join(parts)
        )
        return [RenderedMessage(payload={"content": content[:_DISCORD_CONTENT_LIMIT]}, alerts=context.alerts)]

    async def send(self, message: RenderedMessage) -> None:
        await self._post_json(self.webhook_url, message.payload)


class GitHubIssueSink(NotificationSink):
    """GitHub issue tracker: one issue per alert on the package's own repository."""

    name = "github"
    authoritative = True

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str,
        api_base: str = "https://api.github.com",
    ) -> None:
        super().__init__(client)
        self.token = token
        self.api_base = api_base.rstrip("/")

    def render(self, context: AlertContext) -> list[RenderedMessage]:
        if not context.packument.repository_url:
            raise ConfigurationError(f"{context.package_name} declares no repository URL")
        owner, repo = parse_github_repository(context.packument.repository_url)
        return [
            RenderedMessage(
                payload=self._issue(context, alert),
                alerts=(alert,),
                target=f"{owner}/{repo}",
            )
            for alert in context.alerts
        ]

    @staticmethod
    def _issue(context: AlertContext, alert: Alert) -> dict[str, str]:
        coordinate = f"`{context.package_name}@{context.latest}`"
        if alert.action is AlertAction.CHANGED:
            title = f"[Security Alert] `{alert.script_type}` script changed in {coordinate}"
            body = (
                f"The `{alert.script_type}` script was changed in version `{context.latest}` "
                f"of the package `{context.package_name}`.\n\n"
                f"**Previous version:** {context.previous or 'none'}\n"
                f"**Previous script:**\n```\n{alert.old_command or ''}\n```\n\n"
                f"**New script:**\n```\n{alert.new_command}\n```\n\n"
                "This could be a security risk. Please investigate.\n"
            )
        else:
            title = f"[Security Alert] New `{alert.script_type}` script added in {coordinate}"
            body = (
                f"A new `{alert.script_type}` script was detected in version `{context.latest}` "
                f"of the package `{context.package_name}`.\n\n"
                f"**Previous version:** {context.previous or 'none'}\n"
                f"**Script content:**\n```\n{alert.new_command}\n```\n\n"
                "This could be a security risk. Please investigate.\n"
            )
        return {"title": title, "body": body}

    async def send(self, message: RenderedMessage) -> None:
        await self._post_json(
            f"{self.api_base}/repos/{message.target}/issues",
            message.payload,
            headers={
                "Authorization": f"token {self.token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass
class DeliveryReport:
    """Per-sink outcome of one dispatch.

    Attributes:
        delivered: Alerts each sink accepted, keyed by sink name
        failures: Error messages, keyed by sink name
    """

    delivered: dict[str, list[Alert]] = field(default_factory=dict)
    failures: dict[str, list[str]] = field(default_factory=dict)


class AlertDispatcher:
    """Fan an alert batch out to every configured sink.

    Attributes:
        sinks: The configured sinks
        timeout: Deadline of a single send, in seconds

    Example::

        dispatcher = AlertDispatcher(build_sinks(client, github_token=token))
        delivered = await dispatcher.dispatch("pkg", "1.1.0", "1.0.0", alerts, packument)
    """

    def __init__(self, sinks: list[NotificationSink], timeout: float = DEFAULT_SINK_TIMEOUT) -> None:
        self.sinks: list[NotificationSink] = list(sinks)
        self.timeout: float = timeout

    async def dispatch(
        self,
        package_name: str,
        latest_version: str,
        previous_version: str | None,
        alerts: list[Alert],
        packument: Packument,
    ) -> list[Alert]:
        """Send ``alerts`` to every sink.

        Never raises for sink failures.

        Returns:
            The alerts accepted by the authoritative sink(s), in input order.
        """
        delivered, _ = await self.dispatch_with_report(
            package_name, latest_version, previous_version, alerts, packument
        )
        return delivered

    async def dispatch_with_report(
        self,
        package_name: str,
        latest_version: str,
        previous_version: str | None,
        alerts: list[Alert],
        packument: Packument,
    ) -> tuple[list[Alert], DeliveryReport]:
        """Like :meth:`dispatch`, also returning the per-sink outcome."""
        report = DeliveryReport()
        if not alerts or not self.sinks:
            return [], report

        context = AlertContext(
            package_name=package_name,
            latest=latest_version,
            previous=previous_version,
            alerts=tuple(alerts),
            packument=packument,
        )
        await asyncio.gather(*(self._deliver(sink, context, report) for sink in self.sinks))

        accepted = {
            alert
            for sink in self.sinks
            if sink.authoritative
            for alert in report.delivered.get(sink.name, [])
        }
        return [alert for alert in alerts if alert in accepted], report

    async def _deliver(self, sink: NotificationSink, context: AlertContext, report: DeliveryReport) -> None:
        log = logger.bind(sink=sink.name, package=context.package_name, version=context.latest)
        try:
            messages = sink.render(context)
        except ConfigurationError as exc:
            log.warning("sink_skipped", reason=str(exc))
            report.failures.setdefault(sink.name, []).append(str(exc))
            return
        except Exception as exc:  # noqa: BLE001 - a broken renderer must not stop other sinks
            log.error("sink_render_failed", error=str(exc), error_type=type(exc).__name__)
            report.failures.setdefault(sink.name, []).append(str(exc))
            return

        for message in messages:
            try:
                await asyncio.wait_for(sink.send(message), timeout=self.timeout)
            except asyncio.TimeoutError:
                reason = f"{sink.name} notification timeout after {self.timeout:g}s"
                log.warning("sink_delivery_failed", target=message.target, error=reason)
                report.failures.setdefault(sink.name, []).append(reason)
            except Exception as exc:  # noqa: BLE001
                log.warning(
                    "sink_delivery_failed",
                    target=message.target,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                report.failures.setdefault(sink.name, []).append(str(exc))
            else:
                log.info("sink_delivered", target=message.target, alerts=len(message.alerts))
                report.delivered.setdefault(sink.name, []).extend(message.alerts)


def build_sinks(
    client: httpx.AsyncClient,
    telegram_bot_token: str | None = None,
    telegram_chat_id: str | None = None,
    discord_webhook_url: str | None = None,
    github_token: str | None = None,
) -> list[NotificationSink]:
    """Build the sinks whose credentials are present; others are skipped silently."""
    sinks: list[NotificationSink] = []
    if telegram_bot_token and telegram_chat_id:
        sinks.append(TelegramSink(client, telegram_bot_token, telegram_chat_id))
    if discord_webhook_url:
        sinks.append(DiscordSink(client, discord_webhook_url))
    if github_token:
        sinks.append(GitHubIssueSink(client, github_token))
    return sinks
