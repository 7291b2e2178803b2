import json
from pathlib import Path

import pytest

from intentflow.models import Clarification, Intent, Task
from intentflow.state import HistoryRecord, HistoryRecorder, IntentStore, KnowledgeLog, StateError


def test_intent_roundtrip_and_revision_envelope(tmp_path: Path) -> None:
    store = IntentStore(tmp_path / "state")
    intent = Intent(id="fix-login", title="Fix login", kind="fix", labels=["auth"], risk="low")
    intent.pending_questions.append(Clarification(question="Which provider?"))

    store.put(intent)
    store.put(intent)
    loaded = store.get("fix-login")

    assert loaded is not None
    assert loaded.title == "Fix login"
    assert loaded.labels == ["auth"]
    assert loaded.pending_questions[0].question == "Which provider?"
    assert loaded.paused is True
    assert store.get_envelope("intents")["revision"] == 2

    envelope = json.loads((tmp_path / "state" / "intents.json").read_text(encoding="utf-8"))
    assert envelope["schema_version"] == 1
    assert envelope["revision"] == 2
    assert "fix-login" in envelope["data"]
    assert not (tmp_path / "state" / ".lock").exists()


def test_get_unknown_returns_none(tmp_path: Path) -> None:
    store = IntentStore(tmp_path)

    assert store.get("missing") is None
    assert store.get_task("missing") is None


def test_new_intent_id_is_a_unique_slug(tmp_path: Path) -> None:
    store = IntentStore(tmp_path)
    first = store.new_intent_id("Add Dark Mode!")
    store.put(Intent(id=first, title="Add Dark Mode!"))

    assert first == "add-dark-mode"
    assert store.new_intent_id("Add dark mode") == "add-dark-mode-2"


def test_list_where_and_tasks_keep_insertion_order(tmp_path: Path) -> None:
    store = IntentStore(tmp_path)
    store.put(Intent(id="b", title="b", status="approved"))
    store.put(Intent(id="a", title="a", status="done"))
    for local in ["t2", "t10", "t1"]:
        store.put_task(Task(id=f"b--{local}", intent_id="b", plan="p"))
    store.put_task(Task(id="a--t1", intent_id="a", plan="p"))

    assert [intent.id for intent in store.list_where()] == ["b", "a"]
    assert [intent.id for intent in store.list_where(lambda i: i.status == "done")] == ["a"]
    assert [task.id for task in store.tasks_for("b")] == ["b--t2", "b--t10", "b--t1"]


def test_inbox_lists_pending_approval_paused_and_failed(tmp_path: Path) -> None:
    store = IntentStore(tmp_path)
    store.put(Intent(id="low", title="low", risk="low", status="proposed"))
    store.put(Intent(id="medium", title="medium", risk="medium", status="proposed"))
    paused = Intent(id="paused", title="paused", risk="low", status="executing")
    paused.pending_questions.append(Clarification(question="?"))
    store.put(paused)
    store.put(Intent(id="blocked", title="blocked", status="blocked"))
    store.put(Intent(id="error", title="error", status="error"))
    store.put(Intent(id="done", title="done", status="done"))

    reasons = {item.intent.id: item.reason for item in store.inbox()}

    assert reasons == {
        "medium": "awaiting approval",
        "paused": "needs clarification",
        "blocked": "blocked",
        "error": "error",
    }


def test_corrupt_state_file_raises_state_error(tmp_path: Path) -> None:
    (tmp_path / "intents.json").write_text("{not json", encoding="utf-8")
    store = IntentStore(tmp_path)

    with pytest.raises(StateError):
        store.list_where()


def test_stale_lock_times_out(tmp_path: Path) -> None:
    store = IntentStore(tmp_path)
    store.lock_file.write_text("12345", encoding="utf-8")

    with pytest.raises(StateError):
        with store._state_lock(timeout_seconds=0.05):
            pass


def test_history_recorder_appends_jsonl(tmp_path: Path) -> None:
    recorder = HistoryRecorder(tmp_path / "history.jsonl")
    record = HistoryRecord(intent_id="fix-login", outcome="done")
    record.add_step("analyze", "produced_subtasks", duration_ms=12, adjustment="Continue")
    record.dispatch_order.append("fix-login--t1")

    assert recorder.append(record) is True
    assert recorder.append(HistoryRecord(intent_id="other", outcome="error")) is True

    entries = recorder.records_for("fix-login")
    assert len(entries) == 1
    assert entries[0]["steps"][0]["kind"] == "analyze"
    assert entries[0]["dispatch_order"] == ["fix-login--t1"]
    assert entries[0]["finished_at"]


def test_history_recorder_never_raises(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    recorder = HistoryRecorder(blocker / "history.jsonl")

    assert recorder.append(HistoryRecord(intent_id="x", outcome="done")) is False


def test_knowledge_log_skips_malformed_lines(tmp_path: Path) -> None:
    log = KnowledgeLog(tmp_path / "knowledge.jsonl")
    log.append("fix-login", ["tests live under tests/unit/"], outcome="done")
    with log.path.open("a", encoding="utf-8") as handle:
        handle.write("garbage\n")

    entries = log.read()

    assert len(entries) == 1
    assert entries[0]["observations"] == ["tests live under tests/unit/"]
