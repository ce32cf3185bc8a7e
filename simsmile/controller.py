"""Capture-to-result orchestration.

StepController owns the ControllerState and moves it only through the pure
transitions in steps.py. Processing runs the stages in a fixed order:

    optimize (pair) -> decode (pair) -> quality (pair, advisory)
    -> landmarks (one after the other) -> metrics chain -> simulation

Only errors before the simulation abort a run. Missing landmarks degrade to
the fallback metrics and an unavailable simulation degrades to the optimized
smiling photo.
"""
import asyncio
import logging
import time
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import List, Optional, Tuple

from . import steps
from .config import PIPELINE_DEADLINE_SECONDS
from .errors import InvalidTransition, ProcessingInProgress
from .face_analyzer import FaceAnalyzer
from .metrics import (
    analyze_face_characteristics,
    generate_analysis_text,
    generate_smile_recommendations,
    metrics_from_landmarks,
)
from .preprocess import decode_image, optimize_image, validate_image_quality
from .schemas import ContactData, ControllerState, Detection, Notice, PipelineRun
from .simulation import CancellationToken, SimulationClient

logger = logging.getLogger(__name__)

FACE_ANALYZER_UNAVAILABLE = (
    "Sistema de análisis facial no disponible. Puede continuar, pero el análisis será limitado."
)
FACE_ANALYZER_READY = "Sistema de análisis facial disponible."
ALREADY_PROCESSING = "Ya se está procesando una imagen. Por favor espere."
NO_FACE = (
    "No se detectó rostro en la imagen de {label}. Por favor, asegúrese de que su rostro "
    "esté visible y centrado. El análisis será estimado."
)
SIMULATION_UNAVAILABLE = (
    "La simulación automática no está disponible en este momento. "
    "Continuaremos con el análisis facial."
)
RUN_FAILED = "Error: {error}"
RUN_FAILED_TERMINAL = (
    "No se pudo procesar la imagen después de varios intentos. "
    "Por favor, intente con una foto diferente."
)
CONTACT_RECEIVED = "¡Análisis completado! Revise sus resultados a continuación."


@contextmanager
def _stage(name: str):
    """Log how long a pipeline stage took."""
    start = time.perf_counter()
    try:
        yield
    except Exception:
        logger.error(f"[Stage] {name} failed after {(time.perf_counter() - start) * 1000:.2f}ms")
        raise
    logger.info(f"[Stage] {name}: {(time.perf_counter() - start) * 1000:.2f}ms")


class StepController:
    """Finite-state controller for one capture flow.

    Only one run can be in flight: begin_capture() checks and sets the
    processing flag without suspending, so a second submission is rejected
    before any work starts.
    """

    def __init__(
        self,
        face_analyzer: Optional[FaceAnalyzer] = None,
        simulation_client: Optional[SimulationClient] = None,
        executor: Optional[Executor] = None,
        deadline_seconds: float = PIPELINE_DEADLINE_SECONDS,
    ):
        self.face_analyzer = face_analyzer or FaceAnalyzer()
        self.simulation_client = simulation_client or SimulationClient()
        self.deadline_seconds = deadline_seconds
        self._executor = executor
        self._state = ControllerState()
        self.history: List[Tuple[str, ControllerState]] = [("init", self._state)]
        self._notices: List[Notice] = []
        self._unavailable_notified = False

    # --- State ---

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._state.processing

    def _apply(self, event: str, new_state: ControllerState) -> ControllerState:
        self._state = new_state
        self.history.append((event, new_state))
        logger.info(f"Step -> {new_state.step.value} ({event})")
        return new_state

    # --- Notices ---

    def notify(self, level: str, message: str, action: Optional[str] = None) -> None:
        self._notices.append(Notice(level=level, message=message, action=action))

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def drain_notices(self) -> List[Notice]:
        notices, self._notices = self._notices, []
        return notices

    # --- Face analyzer lifecycle ---

    def initialize(self) -> bool:
        """Create the landmark capability once, at process start."""
        ready = self.face_analyzer.initialize()
        if not ready:
            self._notify_unavailable()
        return ready

    async def retry_face_analyzer(self) -> bool:
        """User-requested re-initialization of the landmark capability.

        Raises:
            ProcessingInProgress: If a run is in flight; its detections use
                the handle that would be replaced.
        """
        if self._state.processing:
            self._reject_busy("Face analyzer retry")
            raise ProcessingInProgress("A run is already in progress")

        ready = await self._in_executor(self.face_analyzer.reinitialize)
        self._unavailable_notified = False
        if ready:
            self.notify("success", FACE_ANALYZER_READY)
        else:
            self._notify_unavailable()
        return ready

    def _notify_unavailable(self) -> None:
        if self._unavailable_notified:
            return
        self._unavailable_notified = True
        self.notify("warning", FACE_ANALYZER_UNAVAILABLE, action="retry_face_analyzer")

    # --- Transitions ---

    def _reject_busy(self, what: str) -> bool:
        logger.warning(f"{what} rejected: already processing")
        self.notify("warning", ALREADY_PROCESSING)
        return False

    def accepting_captures(self) -> bool:
        """False, with the already-processing notice, while a run is in flight."""
        if self._state.processing:
            return self._reject_busy("Capture")
        return True

    def start(self) -> ControllerState:
        return self._apply("start", steps.start(self._state))

    def begin_capture(self, rest_image: str, smile_image: str) -> bool:
        """Enter processing with a photo pair.

        Returns False (and posts a notice) when a run is already in flight.

        Raises:
            InvalidTransition: If not capturing, or the pair has no attempts left.
        """
        try:
            new_state = steps.begin_processing(self._state, rest_image, smile_image)
        except ProcessingInProgress:
            return self._reject_busy("Capture")
        except InvalidTransition:
            if self._state.terminalFailure:
                self.notify("error", RUN_FAILED_TERMINAL)
            raise

        self._apply("capture", new_state)
        return True

    def begin_retry(self) -> bool:
        """Re-enter processing with the photos of the failed run.

        Raises:
            InvalidTransition: If no retry is on offer.
        """
        try:
            new_state = steps.retry_processing(self._state)
        except ProcessingInProgress:
            return self._reject_busy("Retry")

        self._apply("retry", new_state)
        return True

    async def submit_capture(self, rest_image: str, smile_image: str) -> ControllerState:
        """begin_capture() followed by process()."""
        if not self.begin_capture(rest_image, smile_image):
            return self._state
        return await self.process()

    async def retry(self) -> ControllerState:
        if not self.begin_retry():
            return self._state
        return await self.process()

    def submit_contact(self, contact: ContactData) -> ControllerState:
        new_state = self._apply("contact", steps.attach_contact(self._state, contact))
        self.notify("success", CONTACT_RECEIVED)
        return new_state

    def reset(self) -> ControllerState:
        return self._apply("reset", steps.reset(self._state))

    # --- Processing ---

    async def process(self) -> ControllerState:
        """Run the pipeline for the run in flight.

        Pipeline errors never escape: they become a failed transition with
        a notice. The deadline token only affects the simulation call.

        Raises:
            InvalidTransition: If no run is in flight.
        """
        run = self._state.run
        if not self._state.processing or run is None:
            raise InvalidTransition("No run in flight")

        token = CancellationToken.with_deadline(self.deadline_seconds)
        started = time.perf_counter()
        try:
            finished = await self._run_pipeline(run, token)
        except asyncio.CancelledError:
            self._fail("Procesamiento cancelado")
            raise
        except Exception as e:
            logger.error(f"Error processing smile: {e}", exc_info=True)
            self._fail(str(e))
        else:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            finished = finished.model_copy(update={"processingTimeMs": elapsed_ms})
            self._apply("complete", steps.complete_processing(self._state, finished))
            logger.info(f"Run completed in {elapsed_ms}ms (attempt {run.retryCount + 1})")
        finally:
            token.dispose()

        return self._state

    def _fail(self, error: str) -> None:
        new_state = self._apply("fail", steps.fail_processing(self._state, error))
        if new_state.retryAvailable:
            self.notify("error", RUN_FAILED.format(error=error), action="retry_capture")
        else:
            self.notify("error", RUN_FAILED_TERMINAL)

    async def _in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def _run_pipeline(self, run: PipelineRun, token: CancellationToken) -> PipelineRun:
        with _stage("optimize"):
            optimized_rest, optimized_smile = await asyncio.gather(
                self._in_executor(optimize_image, run.restImage),
                self._in_executor(optimize_image, run.smileImage),
            )

        with _stage("decode"):
            rest_image, smile_image = await asyncio.gather(
                self._in_executor(decode_image, optimized_rest),
                self._in_executor(decode_image, optimized_smile),
            )

        with _stage("quality"):
            rest_quality, smile_quality = await asyncio.gather(
                self._in_executor(validate_image_quality, rest_image),
                self._in_executor(validate_image_quality, smile_image),
            )
        quality_warnings = [f"Reposo: {issue}" for issue in rest_quality.issues]
        quality_warnings += [f"Sonrisa: {issue}" for issue in smile_quality.issues]
        if not (rest_quality.acceptable and smile_quality.acceptable):
            logger.warning("Image quality validation failed, continuing with warnings")

        # One detection at a time: the landmarker handle is shared
        with _stage("landmarks"):
            smile_detection = await self._in_executor(self.face_analyzer.detect, smile_image)
            rest_detection = await self._in_executor(self.face_analyzer.detect, rest_image)
        self._report_detection(smile_detection, rest_detection)

        with _stage("metrics"):
            height, width = smile_image.shape[:2]
            metrics = metrics_from_landmarks(
                rest_detection.landmarks if rest_detection.found else None,
                smile_detection.landmarks if smile_detection.found else None,
                width,
                height,
            )
            face_analysis = analyze_face_characteristics(metrics)
            recommendations = generate_smile_recommendations(face_analysis, metrics)
            analysis_text = generate_analysis_text(face_analysis, metrics, recommendations)

        with _stage("simulation"):
            simulation = await self.simulation_client.simulate(
                optimized_smile, metrics, face_analysis, recommendations, token
            )

        if simulation.available:
            ideal_image = simulation.idealImage or simulation.simulatedImage
            result_smile_image = simulation.simulatedImage
        else:
            logger.warning("Simulation failed, using original image")
            self.notify("info", SIMULATION_UNAVAILABLE)
            ideal_image = optimized_smile
            result_smile_image = optimized_smile

        return run.model_copy(update={
            "optimizedRest": optimized_rest,
            "optimizedSmile": optimized_smile,
            "restLandmarks": rest_detection.landmarks if rest_detection.found else None,
            "smileLandmarks": smile_detection.landmarks if smile_detection.found else None,
            "qualityWarnings": quality_warnings,
            "metrics": metrics,
            "faceAnalysis": face_analysis,
            "recommendations": recommendations,
            "analysisText": analysis_text,
            "simulation": simulation,
            "idealImage": ideal_image,
            "resultSmileImage": result_smile_image,
        })

    def _report_detection(self, smile: Detection, rest: Detection) -> None:
        if smile.found and rest.found:
            logger.info("Landmarks detected in both photos")
            return

        logger.warning(
            f"Landmarks unavailable (smile: {smile.status}, rest: {rest.status}), using fallback metrics"
        )
        if "unavailable" in (smile.status, rest.status):
            self._notify_unavailable()
        for detection, label in ((smile, "sonrisa"), (rest, "reposo")):
            if detection.status == "no_face":
                self.notify("warning", NO_FACE.format(label=label))
