# Namespace for ORM models.
from .job import JobPhase, JobStatus, ProcessingJob
from .question import Question
from .video import Video, VideoStatus

__all__ = ["JobPhase", "JobStatus", "ProcessingJob", "Question", "Video", "VideoStatus"]
