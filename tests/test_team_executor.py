from __future__ import annotations

import threading

import allure
import pytest

from team_conductor.config import ModelTierSettings
from team_conductor.team.executor_queue import TeamExecutor, TeamExecutorClosed
from team_conductor.team.model_resolver import ModelResolver, ResolvedModel, TeamOperation

pytestmark = [
    allure.epic("Team Coordination"),
    allure.feature("Serialized Team Operations"),
]


def test_operations_resolve_through_tiers() -> None:
    resolver = ModelResolver(ModelTierSettings(team_runtime="codex", creative="o3", analytical="gpt-5", routine="mini"))

    assert resolver.resolve(TeamOperation.SOUL_EVOLVE) == ResolvedModel("codex", "o3")
    assert resolver.resolve("self:reflect") == ResolvedModel("codex", "gpt-5")
    assert resolver.resolve(TeamOperation.INBOX_PARSE).model == "mini"
    with pytest.raises(ValueError):
        resolver.resolve("unknown:op")


def test_queue_runs_in_order_and_isolates_failures() -> None:
    calls: list[tuple[str, str, str, str | None]] = []
    active = 0
    overlap = False
    lock = threading.Lock()

    def _runtime(runtime: str, model: str, prompt: str, cwd: str | None) -> str:
        nonlocal active, overlap
        with lock:
            active += 1
            overlap = overlap or active > 1
        try:
            calls.append((runtime, model, prompt, cwd))
            if prompt == "second":
                raise RuntimeError("model overloaded")
            return prompt.upper()
        finally:
            with lock:
                active -= 1

    executor = TeamExecutor(ModelResolver(ModelTierSettings()), _runtime)
    first = executor.execute(TeamOperation.SELF_REFLECT, "first", "/tmp/a")
    second = executor.execute(TeamOperation.CODE_IMPROVE, "second")
    third = executor.execute(TeamOperation.COMMS_SUMMARIZE, "third")

    assert first.result(timeout=5) == "FIRST"
    with pytest.raises(RuntimeError, match="overloaded"):
        second.result(timeout=5)
    assert third.result(timeout=5) == "THIRD"
    executor.shutdown()

    assert [call[2] for call in calls] == ["first", "second", "third"]
    assert [call[1] for call in calls] == ["sonnet", "opus", "haiku"]
    assert calls[0][3] == "/tmp/a"
    assert not overlap


def test_shutdown_drains_queue_then_rejects_new_work() -> None:
    release = threading.Event()

    def _runtime(runtime: str, model: str, prompt: str, cwd: str | None) -> str:
        release.wait(5)
        return prompt

    executor = TeamExecutor(ModelResolver(ModelTierSettings()), _runtime)
    futures = [executor.execute(TeamOperation.TASK_ANALYZE, str(index)) for index in range(3)]
    release.set()
    executor.shutdown(wait=True)

    assert [future.result(timeout=1) for future in futures] == ["0", "1", "2"]
    assert executor.pending_count == 0
    with pytest.raises(TeamExecutorClosed):
        executor.execute(TeamOperation.TASK_ANALYZE, "late")
