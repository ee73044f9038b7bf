import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from session_engine.errors import AuthError, FreeUsageLimitError, NotFoundError
from session_engine.gates import LocalGates, OpenGates
from session_engine.memory.store import MemoryStore
from session_engine.rate_limit import RateLimitConfig, RateLimiter

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class LocalGatesTests(unittest.TestCase):
    def setUp(self) -> None:
        self._dir = PROJECT_ROOT / ".test-artifacts" / f"gates-{uuid4().hex}"
        self._dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._dir, ignore_errors=True)

    def test_missing_api_key(self) -> None:
        with self.assertRaises(AuthError):
            LocalGates(api_key="").assert_authorized()
        LocalGates(api_key="sk-test").assert_authorized()

    def test_worktree_directory(self) -> None:
        gates = LocalGates(api_key="sk-test")
        self.assertEqual(str(self._dir.resolve()), gates.resolve_worktree_directory(str(self._dir)))
        with self.assertRaises(NotFoundError):
            gates.resolve_worktree_directory(str(self._dir / "missing"))

    def test_rate_limit_uses_fresh_limiter_per_turn(self) -> None:
        store = MemoryStore(":memory:")
        built: list[RateLimiter] = []

        def factory() -> RateLimiter:
            limiter = RateLimiter(store, RateLimitConfig(value=2), "anthropic:ANTHROPIC_API_KEY")
            built.append(limiter)
            return limiter

        gates = LocalGates(api_key="sk-test", rate_limiter_factory=factory)
        gates.check_rate_limit()
        gates.check_rate_limit()
        with self.assertRaises(FreeUsageLimitError):
            gates.check_rate_limit()
        self.assertEqual(3, len(built))
        store.close()

    def test_without_limiter_nothing_is_checked(self) -> None:
        LocalGates(api_key="sk-test").check_rate_limit()


class OpenGatesTests(unittest.TestCase):
    def test_everything_passes(self) -> None:
        gates = OpenGates()
        gates.check_rate_limit()
        gates.assert_authorized()
        self.assertEqual("/anywhere", gates.resolve_worktree_directory("/anywhere"))


if __name__ == "__main__":
    unittest.main()
