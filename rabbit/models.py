from pydantic import BaseModel


class RunJobMessage(BaseModel):
    job_id: str
