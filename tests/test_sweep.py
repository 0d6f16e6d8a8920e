"""Unit tests for the background revocation sweep in api/main.py.

Covers:
- a pass that raises is logged and the loop keeps running
- cancellation stops the loop
"""

import asyncio
import logging
from types import SimpleNamespace

import pytest

from api.main import _sweep_loop


class FlakyRegistry:
    """Registry stand-in whose first sweep fails."""

    def __init__(self) -> None:
        self.calls = 0

    def sweep(self) -> tuple[int, int]:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database is locked")
        return 0, 0


class TestSweepLoop:
    def test_failed_pass_does_not_stop_the_loop(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = FlakyRegistry()
        app = SimpleNamespace(state=SimpleNamespace(revocation=registry))

        async def drive() -> None:
            task = asyncio.create_task(_sweep_loop(app, interval=0.01))
            for _ in range(200):
                if registry.calls >= 2:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with caplog.at_level(logging.ERROR, logger="expense_tracker.api"):
            asyncio.run(drive())

        assert registry.calls >= 2
        assert "Revocation sweep failed" in caplog.text
