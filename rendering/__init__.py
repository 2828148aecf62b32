from rendering.models import RenderedPage, RenderOutcome, RenderStatus
from rendering.engine import (
    RenderingEngine,
    RenderingBackend,
    RenderError,
    RenderTimeoutError,
    RenderExecutionError
)
