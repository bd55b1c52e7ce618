from fastapi import Request

from chatdesk.services.inference.base import InferenceBackend
from chatdesk.services.session import SessionStore


def get_inference_backend(request: Request) -> InferenceBackend:
    """Return the inference backend stored on app state during lifespan."""
    return request.app.state.inference_backend


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store
