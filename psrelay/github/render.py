"""Render decoded events as Showdown chat lines.

Rich rooms get single-line HTML fragments for ``/addhtmlbox``; simple rooms
get plain text with Showdown's inline formatting markers neutralised.
Everything drawn from the payload is untrusted and escaped.
"""

from __future__ import annotations

import html
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from psrelay.github.events import (
    CommentCreated,
    Event,
    IssueClosed,
    IssueOpened,
    OtherEvent,
    PullRequestMerged,
    PullRequestOpened,
    PushEvent,
    Repository,
)

if TYPE_CHECKING:
    from psrelay.config import RoomTargets, UsernameAliases

HTML_BOX_COMMAND = "/addhtmlbox "
MAX_LISTED_COMMITS = 5

_ZWSP = "\u200b"
# Showdown chat formatting: **bold** __italic__ ~~strike~~ ^^sup^^ \\sub\\
# ``code`` [[link]] ||spoiler||
_PLAIN_MARKERS = ("**", "__", "~~", "^^", "\\\\", "``", "[[", "]]", "||")
_SAFE_URL_RE = re.compile(r"https?://", re.IGNORECASE)


def _one_line(text: str) -> str:
    return " ".join(text.split())


def escape_html(text: str) -> str:
    """Escape *text* for an HTML box and fold it onto one line."""
    return html.escape(_one_line(text), quote=True)


def escape_plain(text: str) -> str:
    """Fold *text* onto one line and break every Showdown formatting marker."""
    text = _one_line(text)
    for marker in _PLAIN_MARKERS:
        broken = marker[0] + _ZWSP + marker[1]
        while marker in text:
            text = text.replace(marker, broken)
    return text


def _link(url: str, label_html: str) -> str:
    if not _SAFE_URL_RE.match(url):
        return label_html
    return f'<a href="{escape_html(url)}">{label_html}</a>'


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


_NumberedEvent = PullRequestOpened | PullRequestMerged | IssueOpened | IssueClosed | CommentCreated


def _numbered_verb(event: _NumberedEvent) -> str:
    if isinstance(event, PullRequestOpened):
        return "opened pull request"
    if isinstance(event, PullRequestMerged):
        return "merged pull request"
    if isinstance(event, IssueOpened):
        return "opened issue"
    if isinstance(event, IssueClosed):
        return "closed issue"
    target = "pull request" if event.on_pull_request else "issue"
    return f"commented on {target}"


@dataclass(frozen=True)
class RenderedMessage:
    """Chat lines for one event: HTML for rich rooms, plain text for simple rooms."""

    html_lines: tuple[str, ...]
    plain_lines: tuple[str, ...]

    def __bool__(self) -> bool:
        return bool(self.html_lines or self.plain_lines)

    def outbound(self, targets: RoomTargets) -> Iterator[tuple[str, str]]:
        """Yield ``(room, text)`` pairs, rich rooms first, in line order."""
        for room in targets.rooms:
            for line in self.html_lines:
                yield room, HTML_BOX_COMMAND + line
        for room in targets.simple_rooms:
            for line in self.plain_lines:
                yield room, line


class MessageRenderer:
    """Pure mapping from `Event` to chat lines.

    Pushes without commits (branch deletions) and `OtherEvent` render to
    nothing.  Actor names go through the configured username aliases.
    """

    def __init__(self, aliases: UsernameAliases | None = None) -> None:
        self._aliases = aliases

    def _actor(self, login: str) -> str:
        return self._aliases.get(login) if self._aliases is not None else login

    def render_message(self, event: Event) -> RenderedMessage:
        return RenderedMessage(self.render(event), self.render_plain(event))

    # -- HTML ---------------------------------------------------------------

    def render(self, event: Event) -> tuple[str, ...]:
        """HTML lines for *event*, each a single-line ``/addhtmlbox`` fragment."""
        if isinstance(event, OtherEvent):
            return ()
        if isinstance(event, PushEvent):
            return self._push_html(event)
        return (
            f"{self._repo_html(event.repository)} {self._actor_html(event.actor)} "
            f"{_numbered_verb(event)} {_link(event.url, f'#{event.number}')}: "
            f"{escape_html(event.title)}",
        )

    def _repo_html(self, repo: Repository) -> str:
        return f"[{_link(repo.url, escape_html(repo.name))}]"

    def _actor_html(self, login: str) -> str:
        return f"<b>{escape_html(self._actor(login))}</b>"

    def _push_html(self, event: PushEvent) -> tuple[str, ...]:
        if not event.commits:
            return ()
        verb = "force-pushed" if event.forced else "pushed"
        count = _plural(len(event.commits), "new commit")
        parts = [
            f"{self._repo_html(event.repository)} {self._actor_html(event.actor)} {verb} "
            f"{_link(event.compare_url, count)} to <b>{escape_html(event.branch)}</b>"
        ]
        for commit in event.commits[:MAX_LISTED_COMMITS]:
            parts.append(
                f"{_link(commit.url, f'<code>{escape_html(commit.short_id)}</code>')} "
                f"{escape_html(commit.summary)} "
                f"<small>({escape_html(self._actor(commit.author))})</small>"
            )
        hidden = len(event.commits) - MAX_LISTED_COMMITS
        if hidden > 0:
            parts.append(f"and {_plural(hidden, 'more commit')}")
        return ("<br>".join(parts),)

    # -- Plain text ---------------------------------------------------------

    def render_plain(self, event: Event) -> tuple[str, ...]:
        """Plain lines for *event*; every line starts with ``[repository]``."""
        if isinstance(event, OtherEvent):
            return ()
        tag = escape_plain(f"[{event.repository.name}]")
        prefix = f"{tag} {escape_plain(self._actor(event.actor))}"
        if isinstance(event, PushEvent):
            if not event.commits:
                return ()
            verb = "force-pushed" if event.forced else "pushed"
            line = (
                f"{prefix} {verb} {_plural(len(event.commits), 'new commit')} "
                f"to {escape_plain(event.branch)}"
            )
            if event.compare_url:
                line += f": {escape_plain(event.compare_url)}"
            return (line,)
        return (
            f"{prefix} {_numbered_verb(event)} #{event.number}: "
            f"{escape_plain(event.title)} ({escape_plain(event.url)})",
        )
