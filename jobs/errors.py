class JobError(Exception):
    """Base class for job lifecycle errors."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidJobIdError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Invalid job ID: {job_id!r}")
        self.job_id = job_id


class ArtifactNotFoundError(JobError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Artifact {key} not found")
        self.key = key


class InvalidTransitionError(JobError):
    pass


class DispatchError(JobError):
    """The job was persisted but could not be handed over for execution."""
