"""Decode verified GitHub webhook payloads into `Event` variants.

Only the subset of each payload that chat lines need is modelled; unknown
fields are ignored.  Kinds and actions that are not relayed decode to
`OtherEvent` instead of failing, since GitHub sends many of them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from psrelay.errors import MalformedPayload
from psrelay.github.events import (
    Commit,
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

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 200


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class _User(_Payload):
    login: str


class _Repository(_Payload):
    name: str
    full_name: str
    html_url: str

    def to_event(self) -> Repository:
        return Repository(name=self.name, full_name=self.full_name, url=self.html_url)


class _CommitAuthor(_Payload):
    name: str = ""
    username: str | None = None


class _Commit(_Payload):
    id: str
    message: str
    url: str
    author: _CommitAuthor = _CommitAuthor()


class _Push(_Payload):
    ref: str
    compare: str = ""
    forced: bool = False
    commits: list[_Commit] = []
    repository: _Repository
    sender: _User


class _Branch(_Payload):
    ref: str


class _PullRequest(_Payload):
    title: str
    html_url: str
    merged: bool = False
    base: _Branch


class _PullRequestPayload(_Payload):
    action: str
    number: int
    pull_request: _PullRequest
    repository: _Repository
    sender: _User


class _Issue(_Payload):
    number: int
    title: str
    html_url: str
    pull_request: dict[str, Any] | None = None


class _IssuesPayload(_Payload):
    action: str
    issue: _Issue
    repository: _Repository
    sender: _User


class _Comment(_Payload):
    html_url: str


class _IssueCommentPayload(_Payload):
    action: str
    issue: _Issue
    comment: _Comment
    repository: _Repository
    sender: _User


def _excerpt(body: bytes) -> str:
    text = body[:EXCERPT_CHARS].decode("utf-8", errors="replace")
    return text + ("..." if len(body) > EXCERPT_CHARS else "")


def _lenient_repository(payload: dict[str, Any]) -> Repository | None:
    try:
        return _Repository.model_validate(payload.get("repository")).to_event()
    except ValidationError:
        return None


def _decode_push(payload: dict[str, Any]) -> Event:
    push = _Push.model_validate(payload)
    commits = tuple(
        Commit(
            id=c.id,
            message=c.message,
            author=c.author.username or c.author.name,
            url=c.url,
        )
        for c in push.commits
    )
    return PushEvent(
        actor=push.sender.login,
        repository=push.repository.to_event(),
        ref=push.ref,
        compare_url=push.compare,
        commits=commits,
        forced=push.forced,
    )


def _decode_pull_request(payload: dict[str, Any]) -> Event:
    action = payload.get("action")
    if action not in ("opened", "closed"):
        return OtherEvent("pull_request", str(action or ""), _lenient_repository(payload))
    pr = _PullRequestPayload.model_validate(payload)
    fields = {
        "actor": pr.sender.login,
        "repository": pr.repository.to_event(),
        "number": pr.number,
        "title": pr.pull_request.title,
        "url": pr.pull_request.html_url,
        "base_branch": pr.pull_request.base.ref,
    }
    if pr.action == "opened":
        return PullRequestOpened(**fields)
    if pr.pull_request.merged:
        return PullRequestMerged(**fields)
    return OtherEvent("pull_request", "closed", fields["repository"])


def _decode_issues(payload: dict[str, Any]) -> Event:
    action = payload.get("action")
    if action not in ("opened", "closed"):
        return OtherEvent("issues", str(action or ""), _lenient_repository(payload))
    issue = _IssuesPayload.model_validate(payload)
    variant = IssueOpened if issue.action == "opened" else IssueClosed
    return variant(
        actor=issue.sender.login,
        repository=issue.repository.to_event(),
        number=issue.issue.number,
        title=issue.issue.title,
        url=issue.issue.html_url,
    )


def _decode_issue_comment(payload: dict[str, Any]) -> Event:
    action = payload.get("action")
    if action != "created":
        return OtherEvent("issue_comment", str(action or ""), _lenient_repository(payload))
    comment = _IssueCommentPayload.model_validate(payload)
    return CommentCreated(
        actor=comment.sender.login,
        repository=comment.repository.to_event(),
        number=comment.issue.number,
        title=comment.issue.title,
        url=comment.comment.html_url,
        on_pull_request=comment.issue.pull_request is not None,
    )


_DECODERS: dict[str, Callable[[dict[str, Any]], Event]] = {
    "push": _decode_push,
    "pull_request": _decode_pull_request,
    "issues": _decode_issues,
    "issue_comment": _decode_issue_comment,
}


def decode_event(kind: str, body: bytes) -> Event:
    """Parse a verified payload of event *kind* (the ``X-GitHub-Event`` header).

    Raises `MalformedPayload` when the body is not a JSON object or a handled
    kind is missing a required field.
    """
    try:
        payload: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        msg = f"invalid JSON: {exc}"
        raise MalformedPayload(msg, excerpt=_excerpt(body)) from exc

    if not isinstance(payload, dict):
        msg = "payload must be a JSON object"
        raise MalformedPayload(msg, excerpt=_excerpt(body))

    decoder = _DECODERS.get(kind)
    if decoder is None:
        logger.debug("Unrelayed event kind=%s", kind)
        return OtherEvent(kind, str(payload.get("action") or ""), _lenient_repository(payload))

    try:
        return decoder(payload)
    except ValidationError as exc:
        msg = f"{kind} payload failed validation ({exc.error_count()} errors)"
        raise MalformedPayload(msg, excerpt=_excerpt(body)) from exc
