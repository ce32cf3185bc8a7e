"""Tests for pure step transitions."""
import pytest

from simsmile import steps
from simsmile.errors import InvalidTransition, ProcessingInProgress
from simsmile.metrics import FALLBACK_METRICS
from simsmile.schemas import ContactData, ControllerState, Step

REST = "data:image/jpeg;base64,cmVzdA=="
SMILE = "data:image/jpeg;base64,c21pbGU="
CONTACT = ContactData(email="ana@example.com")


def capturing():
    return steps.start(ControllerState())


def failed(state, times=1):
    """Fail `times` runs on the same pair."""
    for _ in range(times):
        state = steps.begin_processing(state, REST, SMILE)
        state = steps.fail_processing(state, "decode error")
    return state


def completed():
    state = steps.begin_processing(capturing(), REST, SMILE)
    run = state.run.model_copy(update={"metrics": FALLBACK_METRICS})
    return steps.complete_processing(state, run)


class TestHappyPath:
    """Test entry -> capturing -> processing -> awaiting_contact -> results."""

    def test_start(self):
        state = capturing()
        assert state.step == Step.CAPTURING
        assert not state.processing

    def test_begin_processing(self):
        state = steps.begin_processing(capturing(), REST, SMILE)
        assert state.step == Step.PROCESSING
        assert state.processing
        assert state.run.retryCount == 0
        assert state.run.fingerprint == steps.photo_pair_fingerprint(REST, SMILE)

    def test_complete(self):
        state = completed()
        assert state.step == Step.AWAITING_CONTACT
        assert not state.processing
        assert state.run.metrics == FALLBACK_METRICS

    def test_contact_then_reset(self):
        state = steps.attach_contact(completed(), CONTACT)
        assert state.step == Step.RESULTS
        assert state.run.contact.email == "ana@example.com"

        state = steps.reset(state)
        assert state == ControllerState()

    def test_progress(self):
        assert steps.progress(ControllerState()) == 0
        assert steps.progress(capturing()) == 25
        assert steps.progress(steps.begin_processing(capturing(), REST, SMILE)) == 50
        assert steps.progress(completed()) == 75
        assert steps.progress(steps.attach_contact(completed(), CONTACT)) == 100

    def test_transitions_do_not_mutate(self):
        before = capturing()
        steps.begin_processing(before, REST, SMILE)
        assert before.step == Step.CAPTURING
        assert before.run is None


class TestIllegalTransitions:
    """Test rejected step changes."""

    def test_capture_from_entry(self):
        with pytest.raises(InvalidTransition):
            steps.begin_processing(ControllerState(), REST, SMILE)

    def test_start_twice(self):
        with pytest.raises(InvalidTransition):
            steps.start(capturing())

    def test_contact_before_processing(self):
        with pytest.raises(InvalidTransition):
            steps.attach_contact(capturing(), CONTACT)

    def test_reset_only_from_results(self):
        with pytest.raises(InvalidTransition):
            steps.reset(completed())

    def test_reentrancy(self):
        state = steps.begin_processing(capturing(), REST, SMILE)
        with pytest.raises(ProcessingInProgress):
            steps.begin_processing(state, "other", "pair")

    def test_reentrancy_is_an_invalid_transition(self):
        assert issubclass(ProcessingInProgress, InvalidTransition)

    def test_complete_outside_processing(self):
        with pytest.raises(InvalidTransition):
            steps.complete_processing(capturing(), completed().run)

    def test_missing_photo(self):
        with pytest.raises(InvalidTransition):
            steps.begin_processing(capturing(), "", SMILE)
        with pytest.raises(InvalidTransition):
            steps.begin_processing(capturing(), REST, "")


class TestRetryBudget:
    """Test the per photo pair retry counter."""

    def test_first_failure_offers_retry(self):
        state = failed(capturing())
        assert state.step == Step.CAPTURING
        assert state.retryAvailable
        assert not state.terminalFailure
        assert state.lastError == "decode error"

    def test_same_pair_continues_counter(self):
        state = failed(capturing())
        state = steps.begin_processing(state, REST, SMILE)
        assert state.run.retryCount == 1

    def test_retry_processing_uses_same_photos(self):
        state = steps.retry_processing(failed(capturing()))
        assert state.processing
        assert state.run.retryCount == 1
        assert (state.run.restImage, state.run.smileImage) == (REST, SMILE)

    def test_third_failure_is_terminal(self):
        state = failed(capturing(), times=3)
        assert state.run.retryCount == 2
        assert not state.retryAvailable
        assert state.terminalFailure

    def test_terminal_pair_rejected(self):
        state = failed(capturing(), times=3)
        with pytest.raises(InvalidTransition):
            steps.begin_processing(state, REST, SMILE)
        with pytest.raises(InvalidTransition):
            steps.retry_processing(state)

    def test_new_pair_resets_counter(self):
        state = failed(capturing(), times=3)
        state = steps.begin_processing(state, REST, "data:image/jpeg;base64,bmV3")
        assert state.run.retryCount == 0
        assert not state.terminalFailure

    def test_retry_without_failure(self):
        with pytest.raises(InvalidTransition):
            steps.retry_processing(capturing())
