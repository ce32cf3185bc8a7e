"""Exceptions raised inside the capture pipeline."""


class SimSmileError(Exception):
    """Base class for pipeline errors."""
    pass


class ImageDecodeError(SimSmileError):
    """Image cannot be decoded at all (corrupt, empty or not an image)."""
    pass


class FaceAnalyzerInitError(SimSmileError):
    """Landmark capability could not be created."""
    pass


class InvalidTransition(SimSmileError):
    """Requested step change is not allowed from the current step."""
    pass


class ProcessingInProgress(InvalidTransition):
    """A run is already in flight on this controller."""
    pass
