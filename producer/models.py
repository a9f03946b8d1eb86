from pydantic import BaseModel, Field
from typing import Any, List, Optional

from jobs.models import JobStatus, WireModel

class AuthRequest(BaseModel):
    username: str = Field(
        examples=["admin"]
    )
    password: str = Field(
        examples=["admin"]
    )

class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class JobCreatedResponse(WireModel):
    job_id: str
    status: JobStatus
    message: str = "Test job submitted successfully"

class JobDeletedResponse(WireModel):
    message: str = "Job deleted successfully"
    job_id: str

class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    details: Optional[List[Any]] = None
