# tests/test_state.py
import pytest

from rewrite_pipeline import state
from rewrite_pipeline.errors import IllegalTransition


def test_job_happy_path_transitions_allowed():
    assert state.can_transition("job", state.JOB_QUEUED, state.JOB_PROCESSING)
    assert state.can_transition("job", state.JOB_PROCESSING, state.JOB_BATCH_SUBMITTED)
    assert state.can_transition("job", state.JOB_BATCH_SUBMITTED, state.JOB_COMPLETED)
    assert state.can_transition("job", state.JOB_BATCH_SUBMITTED, state.JOB_QUEUED)


def test_completed_job_cannot_be_requeued():
    with pytest.raises(IllegalTransition) as ei:
        state.check_transition("job", state.JOB_COMPLETED, state.JOB_QUEUED)
    assert ei.value.code == "illegal_transition"
    assert ei.value.retryable is False
    assert "completed->queued" in ei.value.message


@pytest.mark.parametrize("kind,table", [
    ("job", state.JOB_TRANSITIONS),
    ("request", state.REQUEST_TRANSITIONS),
    ("trigger", state.TRIGGER_TRANSITIONS),
    ("batch", state.BATCH_TRANSITIONS),
])
def test_terminal_states_have_no_outgoing_edges(kind, table):
    terminal = [s for s, targets in table.items() if not targets]
    assert terminal
    for current in terminal:
        for target in table:
            assert not state.can_transition(kind, current, target)


def test_request_cannot_skip_back_to_queued():
    assert not state.can_transition("request", state.REQ_PROCESSING, state.REQ_QUEUED)


def test_completed_batch_can_only_be_downgraded_to_failed():
    assert state.can_transition("batch", state.BATCH_COMPLETED, state.BATCH_FAILED)
    assert not state.can_transition("batch", state.BATCH_COMPLETED, state.BATCH_RUNNING)
    assert not state.can_transition("batch", state.BATCH_FAILED, state.BATCH_SUBMITTED)
