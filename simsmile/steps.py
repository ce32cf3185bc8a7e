"""Step transitions as pure functions over ControllerState.

Each function takes a state and returns a new one, or raises
InvalidTransition. Nothing here performs I/O, so a sequence of transitions
can be replayed in tests.
"""
import hashlib

from .config import MAX_RUN_ATTEMPTS
from .errors import InvalidTransition, ProcessingInProgress
from .schemas import ContactData, ControllerState, PipelineRun, Step

# Progress bar position per step
STEP_PROGRESS = {
    Step.ENTRY: 0,
    Step.CAPTURING: 25,
    Step.PROCESSING: 50,
    Step.AWAITING_CONTACT: 75,
    Step.RESULTS: 100,
}


def photo_pair_fingerprint(rest_image: str, smile_image: str) -> str:
    digest = hashlib.sha256()
    digest.update(rest_image.encode("utf-8"))
    digest.update(b"\0")
    digest.update(smile_image.encode("utf-8"))
    return digest.hexdigest()


def _require(state: ControllerState, *steps: Step) -> None:
    if state.step not in steps:
        expected = ", ".join(s.value for s in steps)
        raise InvalidTransition(f"Cannot do this from step '{state.step.value}' (expected {expected})")


def start(state: ControllerState) -> ControllerState:
    """entry -> capturing."""
    _require(state, Step.ENTRY)
    return ControllerState(step=Step.CAPTURING)


def begin_processing(state: ControllerState, rest_image: str, smile_image: str) -> ControllerState:
    """capturing -> processing with a submitted photo pair.

    The retry budget belongs to the photo pair: resubmitting the pair of the
    previous failed run counts as another attempt, a new pair starts from 0.

    Raises:
        ProcessingInProgress: If a run is already in flight.
        InvalidTransition: If not capturing or a photo is missing. Also when
            the pair already used up its attempts.
    """
    if state.processing:
        raise ProcessingInProgress("A run is already in progress")
    _require(state, Step.CAPTURING)
    if not rest_image or not smile_image:
        raise InvalidTransition("Both photos are required")

    fingerprint = photo_pair_fingerprint(rest_image, smile_image)
    previous = state.run
    if previous is not None and previous.fingerprint == fingerprint:
        if state.terminalFailure:
            raise InvalidTransition("This photo pair already failed too many times")
        retry_count = previous.retryCount + 1
    else:
        retry_count = 0

    run = PipelineRun(
        restImage=rest_image,
        smileImage=smile_image,
        fingerprint=fingerprint,
        retryCount=retry_count,
    )
    return ControllerState(step=Step.PROCESSING, processing=True, run=run)


def retry_processing(state: ControllerState) -> ControllerState:
    """capturing -> processing again with the same photos.

    Raises:
        ProcessingInProgress: If a run is already in flight.
        InvalidTransition: If no retry is being offered.
    """
    if state.processing:
        raise ProcessingInProgress("A run is already in progress")
    _require(state, Step.CAPTURING)
    if state.run is None or not state.retryAvailable:
        raise InvalidTransition("No retry available")

    return begin_processing(state, state.run.restImage, state.run.smileImage)


def complete_processing(state: ControllerState, run: PipelineRun) -> ControllerState:
    """processing -> awaiting_contact with the finished run."""
    _require(state, Step.PROCESSING)
    return ControllerState(step=Step.AWAITING_CONTACT, processing=False, run=run)


def fail_processing(state: ControllerState, error: str) -> ControllerState:
    """processing -> capturing after a run-aborting error.

    A retry is offered while the run has attempts left; otherwise the
    failure is terminal for this photo pair.
    """
    _require(state, Step.PROCESSING)
    retry_count = state.run.retryCount if state.run is not None else 0
    retry_available = retry_count < MAX_RUN_ATTEMPTS - 1
    return ControllerState(
        step=Step.CAPTURING,
        processing=False,
        run=state.run,
        retryAvailable=retry_available,
        terminalFailure=not retry_available,
        lastError=error,
    )


def attach_contact(state: ControllerState, contact: ContactData) -> ControllerState:
    """awaiting_contact -> results."""
    _require(state, Step.AWAITING_CONTACT)
    run = state.run.model_copy(update={"contact": contact})
    return ControllerState(step=Step.RESULTS, run=run)


def reset(state: ControllerState) -> ControllerState:
    """results -> entry, dropping the run."""
    _require(state, Step.RESULTS)
    return ControllerState()


def progress(state: ControllerState) -> int:
    return STEP_PROGRESS[state.step]
