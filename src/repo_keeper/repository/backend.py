"""
Version control backend used by the repository manager.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Union
import logging
import re

from git import Actor
from git.repo import Repo

logger = logging.getLogger(__name__)

_ACTOR_RE = re.compile(r"^\s*(?P<name>[^<]*?)\s*<(?P<email>[^>]*)>\s*$")


@dataclass
class CommitInfo:
    hexsha: str
    message: str
    author: str
    authored_at: datetime


class VCSBackend(Protocol):
    """Blocking operations against one working copy.

    Implementations raise their own errors; the repository manager is
    responsible for classifying them.
    """

    def clone(self, uri: str, dest_path: Union[str, Path]) -> None:
        ...

    def fetch(self, remote_name: str) -> None:
        ...

    def log(self, ref: str, limit: int) -> List[CommitInfo]:
        """Commits reachable from ``ref``, newest first."""
        ...

    def checkout(self, commit_id: str) -> None:
        ...

    def stage_all(self) -> None:
        ...

    def reset_index(self) -> None:
        """Unstage everything, leaving the working tree untouched."""
        ...

    def commit(self, message: str, author: str) -> str:
        """Create a commit from the staged changes and return its hash."""
        ...

    def current_branch_name(self) -> Optional[str]:
        """Name of the checked-out branch, or None on a detached HEAD."""
        ...

    def list_branches(self) -> List[str]:
        """Local branches plus remote-tracking branches as ``<remote>/<name>``."""
        ...


def parse_actor(author: str) -> Actor:
    """Parse a ``"Name <email>"`` identity. A bare name gets an empty email."""
    match = _ACTOR_RE.match(author)
    if match:
        return Actor(match.group("name"), match.group("email"))
    return Actor(author.strip(), "")


class GitBackend:
    """VCSBackend implementation on top of GitPython."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._git_repo: Optional[Repo] = None

    @property
    def repo(self) -> Repo:
        if self._git_repo is None:
            self._git_repo = Repo(self.path)
        return self._git_repo

    def clone(self, uri: str, dest_path: Union[str, Path]) -> None:
        logger.debug(f"Cloning {uri} into {dest_path}")
        self._git_repo = Repo.clone_from(uri, str(dest_path))
        self.path = Path(dest_path)

    def fetch(self, remote_name: str) -> None:
        self.repo.remote(remote_name).fetch()

    def log(self, ref: str, limit: int) -> List[CommitInfo]:
        return [
            CommitInfo(
                hexsha=commit.hexsha,
                message=commit.message,
                author=f"{commit.author.name} <{commit.author.email}>",
                authored_at=commit.authored_datetime,
            )
            for commit in self.repo.iter_commits(ref, max_count=limit)
        ]

    def checkout(self, commit_id: str) -> None:
        # Refuse anything that is not a commit, or git would treat it as a path
        self.repo.git.rev_parse("--verify", "--quiet", f"{commit_id}^{{commit}}")
        self.repo.git.checkout(commit_id, "--")

    def stage_all(self) -> None:
        self.repo.git.add(A=True)

    def reset_index(self) -> None:
        self.repo.git.reset("--quiet")

    def commit(self, message: str, author: str) -> str:
        actor = parse_actor(author)
        commit = self.repo.index.commit(message, author=actor, committer=actor)
        return commit.hexsha

    def current_branch_name(self) -> Optional[str]:
        if self.repo.head.is_detached:
            return None
        return self.repo.active_branch.name

    def list_branches(self) -> List[str]:
        branches = [head.name for head in self.repo.heads]
        for remote in self.repo.remotes:
            try:
                branches.extend(ref.name for ref in remote.refs)
            except AssertionError:
                # A remote that was never fetched has no refs yet
                continue
        return branches
