"""
Repository management and operations.
"""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union
import shutil
import logging

from ..config import RepositoryConfig
from ..errors import (
    BackendFailure,
    CheckoutError,
    CommitPreconditionError,
    InitializationError,
    NotInitializedError,
    ResolutionError,
)
from .backend import GitBackend, VCSBackend
from .cache import Cache, MemoryCache, commit_cache_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

ORIGIN = "origin"
NO_COMMITS_MESSAGE = "No commits found for the specified version"

# Refs whose target moves with the working copy; never cached
SYMBOLIC_REFS = {"HEAD", "@", "FETCH_HEAD", "ORIG_HEAD", "MERGE_HEAD"}
REVISION_OPERATORS = ("~", "^", ":", "@{")


def is_relative_ref(version: str) -> bool:
    """True for HEAD-like names and revision expressions such as ``main~1``."""
    return version in SYMBOLIC_REFS or any(op in version for op in REVISION_OPERATORS)


def _log_failure(task: "asyncio.Future") -> None:
    # Retrieves the exception even when the caller was cancelled and stopped waiting
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Repository operation failed: {error}")


class RepositoryManager:
    """Owns one working copy cloned from one origin.

    Every public operation runs under a single gate, so at most one of them
    touches the working copy at any time. Blocking backend calls run in a
    worker thread while the gate is held.
    """

    def __init__(
        self,
        origin_uri: str,
        working_copy_path: Union[str, Path],
        cache: Optional[Cache] = None,
        backend_factory: Callable[[Path], VCSBackend] = GitBackend,
    ):
        self.origin_uri = origin_uri
        self.working_copy_path = Path(working_copy_path)
        self.cache = cache
        self.backend = backend_factory(self.working_copy_path)
        self._gate = asyncio.Lock()
        self._ready = False

    @classmethod
    def from_config(
        cls,
        config: RepositoryConfig,
        backend_factory: Callable[[Path], VCSBackend] = GitBackend,
    ) -> "RepositoryManager":
        cache = MemoryCache(config.cache_ttl) if config.cache_enabled else None
        return cls(
            config.origin_uri,
            config.working_copy_path,
            cache=cache,
            backend_factory=backend_factory,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def _serialized(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` alone against the working copy.

        The body runs in its own task: cancelling the caller neither interrupts
        it nor releases the gate before it has finished.
        """

        async def hold_gate() -> T:
            async with self._gate:
                return await operation()

        task = asyncio.ensure_future(hold_gate())
        task.add_done_callback(_log_failure)
        return await asyncio.shield(task)

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitializedError(
                "Repository is not initialized", str(self.working_copy_path)
            )

    async def initialize(self) -> None:
        """Discard any existing working copy and clone the origin afresh."""
        await self._serialized(self._initialize)

    async def ensure_initialized(self) -> bool:
        """Initialize unless already done. Returns True if a clone happened."""

        async def initialize_once() -> bool:
            if self._ready:
                return False
            await self._initialize()
            return True

        return await self._serialized(initialize_once)

    async def _initialize(self) -> None:
        self._ready = False
        logger.info(
            f"Initializing working copy {self.working_copy_path} from {self.origin_uri}"
        )
        try:
            await self._call(self._remove_working_copy)
            self.working_copy_path.parent.mkdir(parents=True, exist_ok=True)
            await self._call(self.backend.clone, self.origin_uri, self.working_copy_path)
        except Exception as e:
            logger.error(f"Clone failed for {self.origin_uri}: {str(e)}")
            # Leave no partial clone behind
            try:
                await self._call(self._remove_working_copy)
            except OSError as cleanup_error:
                logger.warning(
                    f"Could not remove partial clone at {self.working_copy_path}: {cleanup_error}"
                )
            raise InitializationError("Repository initialization failed", str(e)) from e

        self._ready = True
        logger.info(f"Working copy ready at {self.working_copy_path}")

    def _remove_working_copy(self) -> None:
        path = self.working_copy_path
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)

    async def resolve_commit(self, version: Optional[str] = None) -> str:
        """Resolve a branch, tag or commit to the hash of its latest commit.

        An omitted or blank version means the currently checked-out branch.
        Results are cached under ``commit:<version>`` when a cache is
        configured; local commits do not invalidate them.
        """
        return await self._serialized(lambda: self._resolve_commit(version))

    async def _resolve_commit(self, version: Optional[str]) -> str:
        self._require_ready()
        target = (version or "").strip()

        if not target:
            try:
                target = await self._call(self.backend.current_branch_name)
            except Exception as e:
                raise ResolutionError(NO_COMMITS_MESSAGE, str(e)) from e
            if not target:
                raise ResolutionError(NO_COMMITS_MESSAGE, "no branch is checked out")

        if target.startswith("-"):
            raise ResolutionError(NO_COMMITS_MESSAGE, f"invalid version {target!r}")

        key = commit_cache_key(target)
        use_cache = self.cache is not None and not is_relative_ref(target)
        if use_cache:
            cached = await self.cache.get(key)
            if cached:
                logger.debug(f"Cache hit for {key}")
                return cached
            logger.debug(f"Cache miss for {key}")

        try:
            await self._call(self.backend.fetch, ORIGIN)
            ref = target
            remote_ref = f"{ORIGIN}/{target}"
            if not is_relative_ref(target) and remote_ref in await self._call(
                self.backend.list_branches
            ):
                ref = remote_ref
            commits = await self._call(self.backend.log, ref, 1)
        except Exception as e:
            logger.debug(f"Resolving {target} failed: {e}")
            raise ResolutionError(NO_COMMITS_MESSAGE, str(e)) from e

        if not commits or not commits[0].hexsha:
            raise ResolutionError(NO_COMMITS_MESSAGE, target)

        commit_hash = commits[0].hexsha
        if use_cache:
            await self.cache.set(key, commit_hash)
        return commit_hash

    async def checkout_commit(self, commit_id: str) -> None:
        """Switch the working copy to ``commit_id``. The cache is not touched."""
        await self._serialized(lambda: self._checkout_commit(commit_id))

    async def _checkout_commit(self, commit_id: str) -> None:
        self._require_ready()
        commit_id = (commit_id or "").strip()
        if not commit_id or commit_id.startswith("-"):
            raise CheckoutError("Invalid commit identifier", repr(commit_id))

        try:
            await self._call(self.backend.checkout, commit_id)
        except Exception as e:
            raise CheckoutError(f"Failed to checkout {commit_id}", str(e)) from e
        logger.info(f"Checked out {commit_id}")

    async def commit_changes(
        self, file_path: Union[str, Path], content: str, message: str, author: str
    ) -> str:
        """Write ``content`` to ``file_path`` and commit every pending change.

        ``file_path`` is relative to the working copy; missing parent
        directories are created. Returns the new commit hash.
        """
        return await self._serialized(
            lambda: self._commit_changes(file_path, content, message, author)
        )

    async def _commit_changes(
        self, file_path: Union[str, Path], content: str, message: str, author: str
    ) -> str:
        self._require_ready()
        target = self._target_path(file_path)

        try:
            previous = await self._call(self._read_file, target)
        except OSError as e:
            raise BackendFailure(f"Failed to read {file_path}", str(e)) from e

        try:
            await self._call(self._write_file, target, content)
            await self._call(self.backend.stage_all)
            commit_hash = await self._call(self.backend.commit, message, author)
        except Exception as e:
            await self._rollback(target, previous)
            raise BackendFailure(f"Failed to commit {file_path}", str(e)) from e

        logger.info(f"Committed {file_path} as {commit_hash}")
        return commit_hash

    def _target_path(self, file_path: Union[str, Path]) -> Path:
        root = self.working_copy_path.resolve()
        target = (root / file_path).resolve()

        if target == root or root not in target.parents:
            raise CommitPreconditionError(
                "File path must be inside the working copy", str(file_path)
            )
        if ".git" in target.relative_to(root).parts:
            raise CommitPreconditionError(
                "File path must not point into repository metadata", str(file_path)
            )
        if target.is_dir():
            raise CommitPreconditionError("File path is a directory", str(file_path))
        return target

    async def _rollback(self, target: Path, previous: Optional[bytes]) -> None:
        """Put the target file and the index back as they were before the commit."""
        try:
            await self._call(self._restore_file, target, previous)
            await self._call(self.backend.reset_index)
        except Exception as e:
            logger.error(f"Could not roll back failed commit of {target}: {e}")

    @staticmethod
    def _read_file(target: Path) -> Optional[bytes]:
        return target.read_bytes() if target.is_file() else None

    @staticmethod
    def _restore_file(target: Path, previous: Optional[bytes]) -> None:
        if previous is None:
            target.unlink(missing_ok=True)
        else:
            target.write_bytes(previous)

    @staticmethod
    def _write_file(target: Path, content: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def current_commit(self) -> str:
        """Hash of the commit currently checked out in the working copy."""
        return await self._serialized(self._current_commit)

    async def _current_commit(self) -> str:
        self._require_ready()
        try:
            commits = await self._call(self.backend.log, "HEAD", 1)
        except Exception as e:
            raise BackendFailure("Failed to read the current commit", str(e)) from e
        if not commits:
            raise BackendFailure("Working copy has no commits")
        return commits[0].hexsha
