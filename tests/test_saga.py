import pytest

from errors import NotFoundError, WorkflowError
from saga import Saga


def test_steps_share_context_and_store_results():
    ctx = (
        Saga("demo")
        .step("a", lambda ctx: 1)
        .step("b", lambda ctx: ctx["a"] + 1)
        .run({"seed": True})
    )
    assert ctx == {"seed": True, "a": 1, "b": 2}


def test_failure_runs_compensations_in_reverse():
    undone = []

    def boom(ctx):
        raise RuntimeError("disk on fire")

    saga = (
        Saga("demo")
        .step("first", lambda ctx: "x", lambda ctx: undone.append("first"))
        .step("second", lambda ctx: "y", lambda ctx: undone.append("second"))
        .step("third", boom, lambda ctx: undone.append("third"))
    )
    with pytest.raises(WorkflowError) as info:
        saga.run()

    assert undone == ["second", "first"]
    assert info.value.failed_step == "third"
    assert info.value.completed == ["first", "second"]
    assert info.value.details == {"failed_step": "third", "completed_steps": ["first", "second"]}


def test_domain_errors_are_reraised_unchanged():
    undone = []

    def missing(ctx):
        raise NotFoundError("Course not found")

    saga = Saga("demo").step("first", lambda ctx: 1, lambda ctx: undone.append("first")).step("second", missing)
    with pytest.raises(NotFoundError):
        saga.run()
    assert undone == ["first"]


def test_failing_compensation_does_not_stop_the_unwind():
    undone = []

    def broken(ctx):
        raise RuntimeError("cannot undo")

    def boom(ctx):
        raise RuntimeError("fail")

    saga = (
        Saga("demo")
        .step("first", lambda ctx: 1, lambda ctx: undone.append("first"))
        .step("second", lambda ctx: 2, broken)
        .step("third", boom)
    )
    with pytest.raises(WorkflowError):
        saga.run()
    assert undone == ["first"]
