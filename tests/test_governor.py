import random
import threading

import pytest

from rolloutagent.agent.governor import CallGovernor, canonical_args


def test_canonical_args_ignores_key_order() -> None:
    assert canonical_args({"b": 1, "a": "x"}) == canonical_args({"a": "x", "b": 1})
    assert canonical_args({"a": "x", "b": 1}) == '{"a":"x","b":1}'
    assert canonical_args(None) == "{}"


def test_allows_up_to_ceiling_then_rejects() -> None:
    governor = CallGovernor(max_calls=4)
    results = [governor.allow("s1", "get_logs", canonical_args({"name": f"pod-{i}"})) for i in range(5)]
    assert results == [True, True, True, True, False]
    assert governor.call_count("s1") == 4


def test_duplicate_call_rejected_without_consuming_budget() -> None:
    governor = CallGovernor(max_calls=4)
    args = canonical_args({"namespace": "prod", "name": "canary-1"})
    assert governor.allow("s1", "get_logs", args) is True
    assert governor.allow("s1", "get_logs", args) is False
    assert governor.call_count("s1") == 1
    # same arguments, different tool
    assert governor.allow("s1", "get_events", args) is True


def test_sessions_are_independent() -> None:
    governor = CallGovernor(max_calls=1)
    assert governor.allow("s1", "get_logs", "{}") is True
    assert governor.allow("s1", "get_metrics", "{}") is False
    assert governor.allow("s2", "get_logs", "{}") is True


def test_reset_clears_count_and_history() -> None:
    governor = CallGovernor(max_calls=2)
    governor.allow("s1", "get_logs", "{}")
    governor.allow("s1", "get_events", "{}")
    assert governor.allow("s1", "get_metrics", "{}") is False

    governor.reset("s1")
    assert governor.call_count("s1") == 0
    assert governor.allow("s1", "get_logs", "{}") is True


def test_zero_ceiling_rejects_everything() -> None:
    governor = CallGovernor(max_calls=0)
    assert governor.allow("s1", "get_logs", "{}") is False


def test_negative_ceiling_is_invalid() -> None:
    with pytest.raises(ValueError):
        CallGovernor(max_calls=-1)


def test_random_sequences_respect_ceiling_and_uniqueness() -> None:
    rng = random.Random(1234)
    tools = ["get_logs", "get_events", "get_metrics", "get_workload_status"]
    for _ in range(200):
        ceiling = rng.randint(0, 6)
        governor = CallGovernor(max_calls=ceiling)
        accepted = []
        for _ in range(rng.randint(0, 20)):
            call = (rng.choice(tools), canonical_args({"name": f"pod-{rng.randint(0, 3)}"}))
            if governor.allow("s", *call):
                accepted.append(call)
        assert len(accepted) <= ceiling
        assert len(accepted) == len(set(accepted))
        assert governor.call_count("s") == len(accepted)


def test_concurrent_callers_never_exceed_ceiling() -> None:
    governor = CallGovernor(max_calls=4)
    allowed = []
    lock = threading.Lock()
    barrier = threading.Barrier(16)

    def worker(i: int) -> None:
        barrier.wait()
        ok = governor.allow("shared", "get_logs", canonical_args({"name": f"pod-{i}"}))
        with lock:
            allowed.append(ok)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert allowed.count(True) == 4
    assert governor.call_count("shared") == 4


def test_warns_when_tracking_many_sessions(caplog: pytest.LogCaptureFixture) -> None:
    governor = CallGovernor(max_calls=1, name="diagnostic", warn_after_sessions=2)
    with caplog.at_level("WARNING", logger="rolloutagent.agent.governor"):
        for i in range(3):
            governor.allow(f"s{i}", "get_logs", "{}")
    assert governor.active_sessions() == 3
    assert any("tracking 3 sessions" in r.message for r in caplog.records)
