"""FastAPI application for the SimSmile capture server."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import steps
from .config import (
    CAPTURE_RATE_LIMIT,
    CORS_ORIGIN_REGEX,
    CORS_ORIGINS,
    EXECUTOR_WORKERS,
    LOG_LEVEL,
)
from .controller import ALREADY_PROCESSING, StepController
from .errors import InvalidTransition, ProcessingInProgress
from .preprocess import check_upload
from .schemas import (
    CaptureRequest,
    ContactData,
    ControllerState,
    HealthResponse,
    NoticesResponse,
    SimulationSummary,
    StateResponse,
)

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Application state
app = FastAPI(
    title="SimSmile",
    description="Smile capture, facial analysis and ideal smile simulation API",
    version="1.0.0"
)

# Rate limiting
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS - allow_origin_regex for Vercel wildcard subdomains
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state
_controller: Optional[StepController] = None
_executor: Optional[ThreadPoolExecutor] = None
_server_start_time: Optional[float] = None


def get_controller() -> StepController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="Server is starting up")
    return _controller


def build_state_response(state: ControllerState) -> StateResponse:
    """Flatten controller state into what the front end renders."""
    fields = dict(
        step=state.step,
        processing=state.processing,
        progress=steps.progress(state),
        retryAvailable=state.retryAvailable,
        terminalFailure=state.terminalFailure,
        lastError=state.lastError,
    )

    run = state.run
    if run is not None:
        simulation = None
        if run.simulation is not None:
            simulation = SimulationSummary(
                facialAnalysis=run.simulation.facialAnalysis,
                qualityScore=run.simulation.qualityScore,
                warnings=run.simulation.warnings,
            )
        fields.update(
            retryCount=run.retryCount,
            restImage=run.optimizedRest or run.restImage,
            smileImage=run.resultSmileImage or run.optimizedSmile or run.smileImage,
            idealImage=run.idealImage,
            analysis=run.analysisText,
            metrics=run.metrics,
            landmarks=run.smileLandmarks,
            simulation=simulation,
            qualityWarnings=run.qualityWarnings,
            contactEmail=run.contact.email if run.contact else None,
        )

    return StateResponse(**fields)


@app.on_event("startup")
async def startup_event():
    """Initialize server on startup."""
    global _controller, _executor, _server_start_time

    _server_start_time = time.time()
    _executor = ThreadPoolExecutor(max_workers=EXECUTOR_WORKERS)
    if _controller is None:
        _controller = StepController(executor=_executor)
    _controller.initialize()

    logger.info("Server started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    global _executor

    if _controller is not None:
        _controller.face_analyzer.close()
    if _executor:
        _executor.shutdown(wait=True)

    logger.info("Server shutdown complete")


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    uptime = time.time() - _server_start_time if _server_start_time else 0

    return HealthResponse(
        status="healthy",
        face_analyzer_available=_controller is not None and _controller.face_analyzer.available,
        uptime_seconds=round(uptime, 1)
    )


@app.get("/state", response_model=StateResponse)
async def get_state():
    return build_state_response(get_controller().state)


@app.get("/notices", response_model=NoticesResponse)
async def get_notices():
    """Return and clear queued user notices."""
    return NoticesResponse(notices=get_controller().drain_notices())


@app.post("/start", response_model=StateResponse)
async def start():
    controller = get_controller()
    try:
        state = controller.start()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return build_state_response(state)


@app.post("/capture", response_model=StateResponse, status_code=202)
@limiter.limit(CAPTURE_RATE_LIMIT)
async def capture(request: Request, payload: CaptureRequest, background_tasks: BackgroundTasks):
    """Submit the resting and smiling photos.

    Returns immediately in the processing step. Poll /state for results.
    """
    controller = get_controller()
    if not controller.accepting_captures():
        raise HTTPException(status_code=409, detail=ALREADY_PROCESSING)

    for label, image in (("restImage", payload.restImage), ("smileImage", payload.smileImage)):
        error = check_upload(image)
        if error is not None:
            raise HTTPException(status_code=400, detail=f"{label}: {error}")

    try:
        started = controller.begin_capture(payload.restImage, payload.smileImage)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not started:
        raise HTTPException(status_code=409, detail=ALREADY_PROCESSING)

    # Start background processing
    background_tasks.add_task(controller.process)

    logger.info(f"Capture accepted (attempt {controller.state.run.retryCount + 1})")

    return build_state_response(controller.state)


@app.post("/retry", response_model=StateResponse, status_code=202)
async def retry(background_tasks: BackgroundTasks):
    """Re-run the pipeline on the photos of the failed run."""
    controller = get_controller()
    try:
        started = controller.begin_retry()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not started:
        raise HTTPException(status_code=409, detail=ALREADY_PROCESSING)

    background_tasks.add_task(controller.process)

    return build_state_response(controller.state)


@app.post("/contact", response_model=StateResponse)
async def submit_contact(contact: ContactData):
    controller = get_controller()
    try:
        state = controller.submit_contact(contact)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return build_state_response(state)


@app.post("/reset", response_model=StateResponse)
async def reset():
    controller = get_controller()
    try:
        state = controller.reset()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return build_state_response(state)


@app.post("/face-analyzer/retry", response_model=HealthResponse)
async def retry_face_analyzer():
    """Re-create the landmark capability after a failed start."""
    controller = get_controller()
    try:
        await controller.retry_face_analyzer()
    except ProcessingInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await health_check()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
