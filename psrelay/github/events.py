"""Decoded GitHub events: a closed set of immutable variants."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Repository:
    name: str
    full_name: str
    url: str


@dataclass(frozen=True, slots=True)
class Commit:
    """One pushed commit, reduced to what a chat line shows."""

    id: str
    message: str
    author: str
    url: str

    @property
    def short_id(self) -> str:
        return self.id[:6]

    @property
    def summary(self) -> str:
        """First line of the commit message."""
        return self.message.split("\n", 1)[0]


@dataclass(frozen=True, slots=True)
class PushEvent:
    actor: str
    repository: Repository
    ref: str
    compare_url: str
    commits: tuple[Commit, ...] = ()
    forced: bool = False

    @property
    def branch(self) -> str:
        """Branch or tag name with the ``refs/heads/`` / ``refs/tags/`` prefix removed."""
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix) :]
        return self.ref


@dataclass(frozen=True, slots=True)
class PullRequestOpened:
    actor: str
    repository: Repository
    number: int
    title: str
    url: str
    base_branch: str


@dataclass(frozen=True, slots=True)
class PullRequestMerged:
    actor: str
    repository: Repository
    number: int
    title: str
    url: str
    base_branch: str


@dataclass(frozen=True, slots=True)
class IssueOpened:
    actor: str
    repository: Repository
    number: int
    title: str
    url: str


@dataclass(frozen=True, slots=True)
class IssueClosed:
    actor: str
    repository: Repository
    number: int
    title: str
    url: str


@dataclass(frozen=True, slots=True)
class CommentCreated:
    actor: str
    repository: Repository
    number: int
    title: str
    url: str
    on_pull_request: bool = False


@dataclass(frozen=True, slots=True)
class OtherEvent:
    """An event kind or action that is not relayed to chat."""

    kind: str
    action: str = ""
    repository: Repository | None = field(default=None)


Event = (
    PushEvent
    | PullRequestOpened
    | PullRequestMerged
    | IssueOpened
    | IssueClosed
    | CommentCreated
    | OtherEvent
)
