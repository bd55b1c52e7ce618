from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str  # "ok" or "degraded"
    llm_status: str  # "connected" or "disconnected"
    conversations: int = 0
    generating: int = 0
    dirty: int = 0
    uptime_seconds: float = 0.0
    version: str = "0.1.0"
