import json

from hmaengine.ops.context import clear_run_id, current_ids, cycle_scope, set_run_id


def test_cycle_scope_nests_and_resets():
    assert current_ids()[1] is None
    with cycle_scope() as outer:
        with cycle_scope() as inner:
            assert inner == outer
        assert current_ids()[1] == outer
    assert current_ids()[1] is None


def test_events_carry_context_and_mirror_to_jsonl(audit, tmp_path):
    audit.run_id = "bound-run"
    audit.event("MONITOR", symbol="NFO:A25AUG100CE", action="SYMBOL_ADDED", details={"id": "r1"})

    set_run_id("ctx-run")
    try:
        with cycle_scope("c1"):
            audit.event("HMA", symbol="NFO:B25AUG200PE", action="HMA_UPDATED")
    finally:
        clear_run_id()

    first, second = audit.tail(10)
    assert first["run_id"] == "bound-run" and first["cycle_id"] is None
    assert first["details"] == {"id": "r1"}
    assert second["run_id"] == "ctx-run" and second["cycle_id"] == "c1"

    only_b = audit.tail(10, symbol="NFO:B25AUG200PE")
    assert [e["action"] for e in only_b] == ["HMA_UPDATED"]

    lines = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(x)["action"] for x in lines] == ["SYMBOL_ADDED", "HMA_UPDATED"]
