import hashlib
import itertools
import uuid
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from repo_keeper.repository.backend import CommitInfo
from repo_keeper.repository.cache import MemoryCache
from repo_keeper.repository.manager import RepositoryManager

ORIGIN_URI = "fake://origin"
AUTHOR = "Test User <test@example.com>"


def make_commit(message: str, author: str = AUTHOR) -> CommitInfo:
    digest = hashlib.sha1(f"{uuid.uuid4().hex}:{message}".encode()).hexdigest()
    return CommitInfo(
        hexsha=digest, message=message, author=author, authored_at=datetime.now()
    )


@dataclass
class FakeOrigin:
    """Remote repository state: branch name -> commits, oldest first."""

    branches: Dict[str, List[CommitInfo]] = field(default_factory=dict)
    tags: Dict[str, CommitInfo] = field(default_factory=dict)
    default_branch: str = "main"

    def add_commit(self, branch: str, message: str) -> str:
        commit = make_commit(message)
        self.branches.setdefault(branch, []).append(commit)
        return commit.hexsha


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory VCSBackend.

    Records every call and the highest number of calls that were ever in
    flight at once. ``block(name)`` makes the next call to ``name`` wait
    until the returned event is set.
    """

    def __init__(self, path: Path, origins: Dict[str, FakeOrigin]):
        self.path = Path(path)
        self.origins = origins
        self.origin: Optional[FakeOrigin] = None
        self.local: Dict[str, List[CommitInfo]] = {}
        self.remote: Dict[str, List[CommitInfo]] = {}
        self.head_branch: Optional[str] = None
        self.detached: Optional[List[CommitInfo]] = None
        self.staged = False
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter_lock = threading.Lock()
        self._blocks: Dict[str, threading.Event] = {}
        self.entered: Dict[str, threading.Event] = {}
        self.fail: Dict[str, Exception] = {}  # one-shot failures by call name

    def block(self, name: str) -> threading.Event:
        release = threading.Event()
        self._blocks[name] = release
        self.entered[name] = threading.Event()
        return release

    def _enter(self, name: str) -> None:
        with self._counter_lock:
            self.calls.append(name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if name in self.entered:
            self.entered[name].set()
        release = self._blocks.pop(name, None)
        if release is not None:
            release.wait(timeout=5)

    def _exit(self) -> None:
        with self._counter_lock:
            self.in_flight -= 1

    def _run(self, name: str, func):
        self._enter(name)
        try:
            if name in self.fail:
                raise self.fail.pop(name)
            return func()
        finally:
            self._exit()

    def _head_chain(self) -> List[CommitInfo]:
        if self.detached is not None:
            return self.detached
        return self.local[self.head_branch]

    def _all_commits(self):
        for chain in itertools.chain(self.local.values(), self.remote.values()):
            for index, commit in enumerate(chain):
                yield commit.hexsha, chain[: index + 1]
        if self.detached:
            for index, commit in enumerate(self.detached):
                yield commit.hexsha, self.detached[: index + 1]

    def _chain_for(self, ref: str) -> List[CommitInfo]:
        if ref == "HEAD":
            return self._head_chain()
        if ref.startswith("origin/") and ref[len("origin/"):] in self.remote:
            return self.remote[ref[len("origin/"):]]
        if ref in self.local:
            return self.local[ref]
        if self.origin is not None and ref in self.origin.tags:
            return [self.origin.tags[ref]]
        for hexsha, chain in self._all_commits():
            if hexsha == ref:
                return chain
        raise RuntimeError(f"fatal: bad revision '{ref}'")

    def clone(self, uri, dest_path):
        def do_clone():
            if uri not in self.origins:
                raise RuntimeError(f"fatal: repository '{uri}' does not exist")
            self.origin = self.origins[uri]
            Path(dest_path).mkdir(parents=True)
            self.remote = {k: list(v) for k, v in self.origin.branches.items()}
            default = self.origin.default_branch
            self.local = {default: list(self.remote.get(default, []))}
            self.head_branch = default
            self.detached = None

        self._run("clone", do_clone)

    def fetch(self, remote_name):
        def do_fetch():
            if remote_name != "origin":
                raise RuntimeError(f"fatal: '{remote_name}' does not appear to be a git repository")
            self.remote = {k: list(v) for k, v in self.origin.branches.items()}

        self._run("fetch", do_fetch)

    def log(self, ref, limit):
        return self._run(
            "log", lambda: list(reversed(self._chain_for(ref)))[:limit]
        )

    def checkout(self, commit_id):
        def do_checkout():
            if commit_id in self.local:
                self.head_branch = commit_id
                self.detached = None
            else:
                self.detached = list(self._chain_for(commit_id))

        self._run("checkout", do_checkout)

    def stage_all(self):
        def do_stage():
            self.staged = True

        self._run("stage_all", do_stage)

    def reset_index(self):
        def do_reset():
            self.staged = False

        self._run("reset_index", do_reset)

    def commit(self, message, author):
        def do_commit():
            chain = self._head_chain()
            # Read-modify-write: lost updates show up if calls interleave
            snapshot = list(chain)
            commit = make_commit(message, author)
            snapshot.append(commit)
            chain[:] = snapshot
            self.staged = False
            return commit.hexsha

        return self._run("commit", do_commit)

    def current_branch_name(self):
        return self._run(
            "current_branch_name",
            lambda: None if self.detached is not None else self.head_branch,
        )

    def list_branches(self):
        return self._run(
            "list_branches",
            lambda: list(self.local) + [f"origin/{name}" for name in self.remote],
        )


@pytest.fixture
def origin():
    repo = FakeOrigin()
    repo.add_commit("main", "Initial commit")
    repo.add_commit("main", "Second commit")
    repo.add_commit("develop", "Develop commit")
    return repo


@pytest.fixture
def origins(origin):
    return {ORIGIN_URI: origin}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def backend_factory(origins):
    def factory(path):
        return FakeBackend(path, origins)

    return factory


@pytest.fixture
def manager(tmp_path, cache, backend_factory):
    return RepositoryManager(
        ORIGIN_URI,
        tmp_path / "working-copy",
        cache=cache,
        backend_factory=backend_factory,
    )


@pytest_asyncio.fixture
async def ready_manager(manager):
    await manager.initialize()
    return manager
