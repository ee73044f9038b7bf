from __future__ import annotations

from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from session_engine.errors import AuthError, NotFoundError
from session_engine.rate_limit import RateLimiter


@runtime_checkable
class PreTurnGates(Protocol):
    """Checks run before a turn touches the provider. Any raise ends the turn."""

    def check_rate_limit(self) -> None: ...

    def assert_authorized(self) -> None: ...

    def resolve_worktree_directory(self, directory: str) -> str: ...


class LocalGates:
    def __init__(
        self,
        *,
        api_key: str | None,
        rate_limiter_factory: Callable[[], RateLimiter] | None = None,
    ):
        self._api_key = api_key
        # A limiter pins its clock when built, so build one per turn.
        self._rate_limiter_factory = rate_limiter_factory

    def check_rate_limit(self) -> None:
        if self._rate_limiter_factory is None:
            return
        limiter = self._rate_limiter_factory()
        limiter.check()
        limiter.track()

    def assert_authorized(self) -> None:
        if not self._api_key:
            raise AuthError("Missing API key for the configured provider")

    def resolve_worktree_directory(self, directory: str) -> str:
        path = Path(directory).expanduser().resolve()
        if not path.is_dir():
            raise NotFoundError(f"Working directory does not exist: {directory}")
        return str(path)


class OpenGates:
    """Gates that let every turn through. Used when no account checks apply."""

    def check_rate_limit(self) -> None:
        return None

    def assert_authorized(self) -> None:
        return None

    def resolve_worktree_directory(self, directory: str) -> str:
        return directory
