import json
import os
import time
from pathlib import Path

import pytest

from conductor.checkpoints import (
    Checkpoint,
    CheckpointService,
    CheckpointStore,
    RestorationService,
)
from conductor.decisions import DecisionPoint, DecisionRequest
from conductor.errors import CheckpointError, CheckpointSequenceError, RestorationValidationError
from conductor.machines import LoopEvent, LoopState, TaskContext, TaskEvent, TaskPhaseMachine
from conductor.notifications import ChangeNotification


def _executing_machine() -> TaskPhaseMachine:
    machine = TaskPhaseMachine(TaskContext(task_id="task-1", task_text="Add a parser"))
    machine.transition(TaskEvent.SKIP_REFINEMENT)
    machine.set_plan("1. lexer\n2. parser")
    machine.transition(TaskEvent.PLAN_CREATED)
    machine.transition(TaskEvent.CRITIQUE_APPROVED)
    assert machine.execution is not None
    machine.execution.transition(
        LoopEvent.CHUNK_READY, chunk={"description": "lexer", "requirements": [], "context": ""}
    )
    machine.execution.transition(LoopEvent.PROPOSED, proposal="1. tokens")
    machine.execution.set_session("implementer", "sess-impl")
    machine.set_session("chunker-1", "sess-chunk")
    machine.record_usage(cost_usd=0.1, duration_seconds=1.0, token_usage={})
    return machine


def _checkpoint(sequence: int, task_id: str = "task-1") -> Checkpoint:
    context = TaskContext(task_id=task_id, task_text="x")
    return Checkpoint(
        task_id=task_id,
        sequence=sequence,
        created_at="2026-01-01T00:00:00+00:00",
        trigger="test",
        task={"phase": "init", "context": context.to_dict()},
    )


def test_store_writes_latest_history_and_index(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)

    store.write(_checkpoint(1))
    store.write(_checkpoint(2))

    assert store.read_latest("task-1")["sequence"] == 2
    assert store.read_sequence("task-1", 1)["sequence"] == 1
    assert [entry["sequence"] for entry in store.list_history("task-1")] == [1, 2]
    assert store.last_sequence("task-1") == 2
    assert store.list_tasks() == ["task-1"]
    assert not list(store.task_dir("task-1").rglob("*.tmp"))


def test_store_refuses_sequences_that_do_not_advance(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.write(_checkpoint(3))

    with pytest.raises(CheckpointSequenceError):
        store.write(_checkpoint(3))
    with pytest.raises(CheckpointSequenceError):
        store.write(_checkpoint(2))

    assert store.read_latest("task-1")["sequence"] == 3


def test_store_prunes_history_beyond_limit(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path, max_history=2)

    for sequence in (1, 2, 3):
        store.write(_checkpoint(sequence))

    assert [entry["sequence"] for entry in store.list_history("task-1")] == [2, 3]
    assert not store.history_path("task-1", 1).exists()
    assert store.read_sequence("task-1", 1) is None


def test_failed_write_leaves_previous_checkpoint_intact(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = CheckpointStore(tmp_path)
    store.write(_checkpoint(1))
    before = store.latest_path("task-1").read_text(encoding="utf-8")

    def failing_replace(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("conductor.checkpoints.store.os.replace", failing_replace)
    with pytest.raises(OSError):
        store.write(_checkpoint(2))

    assert store.latest_path("task-1").read_text(encoding="utf-8") == before
    assert not list(store.task_dir("task-1").rglob("*.tmp"))


def test_corrupt_index_is_rebuilt_from_history(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.write(_checkpoint(1))
    store.write(_checkpoint(2))
    (store.task_dir("task-1") / "meta.json").write_text("{not json", encoding="utf-8")

    assert store.last_sequence("task-1") == 2
    with pytest.raises(CheckpointSequenceError):
        store.write(_checkpoint(2))


def test_archive_moves_task_directory(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.write(_checkpoint(1))

    target = store.archive("task-1")

    assert target is not None and (target / "checkpoint.json").exists()
    assert store.read_latest("task-1") is None
    assert store.archive("task-1") is None


def test_service_sequences_and_refuses_mid_call_snapshots(tmp_path: Path) -> None:
    service = CheckpointService(CheckpointStore(tmp_path))
    machine = _executing_machine()

    first = service.save(machine, "created")
    with service.agent_call():
        assert not service.quiescent
        with pytest.raises(CheckpointError):
            service.save(machine, "mid-call")
    second = service.save(machine, "after")

    assert first is not None and first.sequence == 1
    assert second is not None and second.sequence == 2
    assert service.quiescent


def test_disabled_service_writes_nothing(tmp_path: Path) -> None:
    service = CheckpointService(CheckpointStore(tmp_path), enabled=False)

    assert service.save(_executing_machine(), "any") is None
    assert not (tmp_path / "tasks").exists()


def test_save_then_restore_reproduces_both_machines(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    service = CheckpointService(store)
    machine = _executing_machine()
    service.save(machine, "proposed")

    seen: list[ChangeNotification] = []
    restored = RestorationService(store, sink=seen.append).restore("task-1")

    assert restored.checkpoint.sequence == 1
    assert restored.machine.snapshot() == machine.snapshot()
    assert restored.machine.execution is not None
    assert restored.machine.execution.state is LoopState.REVIEWING
    assert restored.machine.execution.context.proposal == "1. tokens"
    assert sorted(restored.machine.session_ids()) == ["sess-chunk", "sess-impl"]
    assert store.last_validated_sequence("task-1") == 1

    restored.machine.execution.transition(LoopEvent.APPROVED)
    assert seen and seen[-1].kind == "transition"


def test_restore_preserves_pending_decision(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    machine = TaskPhaseMachine(TaskContext(task_id="task-1", task_text="Add a parser"))
    machine.transition(TaskEvent.SKIP_REFINEMENT)
    machine.transition(TaskEvent.PLAN_CREATED)
    request = DecisionRequest(DecisionPoint.PLAN_CRITIQUE, summary="too big", issues=("scope",))
    machine.transition(TaskEvent.CRITIQUE_ESCALATED, request=request)
    CheckpointService(store).save(machine, "critique_escalated")

    restored = RestorationService(store).restore("task-1")

    assert restored.machine.awaiting_decision
    assert restored.machine.context.pending_decision == request


def test_validation_lists_every_problem(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    service = RestorationService(store)
    data = _executing_machine().snapshot()
    loop_context = dict(data["execution"]["context"])
    loop_context.update(review_target=None, attempts={"review": -1})
    checkpoint = {
        "schema_version": 99,
        "sequence": 0,
        "task_id": "task-1",
        "task": {"phase": "executing", "context": data["context"]},
        "execution": {"state": "reviewing", "context": loop_context},
    }

    problems = service.validate(checkpoint, "task-1")

    assert any("schema version" in problem for problem in problems)
    assert any("invalid sequence" in problem for problem in problems)
    assert any("review target" in problem for problem in problems)
    assert any("attempt counter" in problem for problem in problems)


@pytest.mark.parametrize(
    ("mutate", "fragment"),
    [
        (lambda data: data["task"].update(phase="drafting"), "not a known task phase"),
        (lambda data: data.update(execution=None), "requires an execution section"),
        (lambda data: data["execution"].update(state="testing"), "not a known loop state"),
        (lambda data: data.update(task_id="task-2"), "belongs to task"),
        (
            lambda data: data["task"]["context"].update(
                pending_decision={"point": "lunch", "options": []}
            ),
            "unknown decision point",
        ),
    ],
)
def test_restore_rejects_invalid_checkpoints_without_touching_files(
    tmp_path: Path, mutate, fragment: str
) -> None:
    store = CheckpointStore(tmp_path)
    CheckpointService(store).save(_executing_machine(), "proposed")
    latest = store.latest_path("task-1")
    data = json.loads(latest.read_text(encoding="utf-8"))
    mutate(data)
    latest.write_text(json.dumps(data), encoding="utf-8")
    before = latest.read_text(encoding="utf-8")

    with pytest.raises(RestorationValidationError) as excinfo:
        RestorationService(store).restore("task-1")

    assert any(fragment in problem for problem in excinfo.value.problems)
    assert latest.read_text(encoding="utf-8") == before
    assert store.last_validated_sequence("task-1") == 0


def test_restore_reports_missing_and_unreadable_checkpoints(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    service = RestorationService(store)

    with pytest.raises(RestorationValidationError, match="no checkpoint found"):
        service.restore("task-1")

    store.write(_checkpoint(1))
    store.latest_path("task-1").write_text("{truncated", encoding="utf-8")
    with pytest.raises(RestorationValidationError, match="not valid JSON"):
        service.restore("task-1")


def test_restore_refuses_rollback_below_validated_sequence(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    service = CheckpointService(store)
    machine = _executing_machine()
    service.save(machine, "one")
    service.save(machine, "two")
    RestorationService(store).restore("task-1")
    older = store.read_sequence("task-1", 1)
    store.latest_path("task-1").write_text(json.dumps(older), encoding="utf-8")

    with pytest.raises(RestorationValidationError, match="older than the last validated"):
        RestorationService(store).restore("task-1")

    restored = RestorationService(store).restore("task-1", sequence=1)
    assert restored.checkpoint.sequence == 1


def test_resumed_service_continues_the_sequence(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    CheckpointService(store).save(_executing_machine(), "first")
    restored = RestorationService(store).restore("task-1")

    service = CheckpointService(store)
    service.resume_from(restored.checkpoint)
    checkpoint = service.save(restored.machine, "resumed")

    assert checkpoint is not None and checkpoint.sequence == 2


def test_lock_left_by_a_dead_process_is_broken(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path, lock_timeout_seconds=0.05)
    CheckpointService(store).save(_executing_machine(), "first")
    (store.task_dir("task-1") / ".lock").write_text("999999999", encoding="utf-8")

    restored = RestorationService(store).restore("task-1")

    assert restored.checkpoint.sequence == 1
    assert store.last_validated_sequence("task-1") == 1
    assert not (store.task_dir("task-1") / ".lock").exists()


def test_lock_older_than_the_stale_limit_is_broken(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path, lock_timeout_seconds=0.05, stale_lock_seconds=30.0)
    lock_file = store.task_dir("task-1") / ".lock"
    lock_file.parent.mkdir(parents=True)
    lock_file.write_text(str(os.getpid()), encoding="utf-8")
    an_hour_ago = time.time() - 3600
    os.utime(lock_file, (an_hour_ago, an_hour_ago))

    store.write(_checkpoint(1))

    assert store.last_sequence("task-1") == 1


def test_fresh_lock_held_by_a_live_process_times_out(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path, lock_timeout_seconds=0.05)
    lock_file = store.task_dir("task-1") / ".lock"
    lock_file.parent.mkdir(parents=True)
    lock_file.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(CheckpointError, match="Timed out"):
        store.write(_checkpoint(1))

    assert lock_file.exists()


def test_rebuilt_index_keeps_the_validated_sequence(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    service = CheckpointService(store)
    machine = _executing_machine()
    service.save(machine, "one")
    service.save(machine, "two")
    RestorationService(store).restore("task-1")
    (store.task_dir("task-1") / "meta.json").write_text("{not json", encoding="utf-8")

    assert store.last_validated_sequence("task-1") == 2

    older = store.read_sequence("task-1", 1)
    store.latest_path("task-1").write_text(json.dumps(older), encoding="utf-8")
    with pytest.raises(RestorationValidationError, match="older than the last validated"):
        RestorationService(store).restore("task-1")
