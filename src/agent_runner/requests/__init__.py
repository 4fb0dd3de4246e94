"""Run request models and loader exports."""

from .loader import RequestLoadError, load_run_request, parse_run_request
from .models import ExternalTestRepo, GitActions, PostExecutionActions, RunRequest, UploadFiles

__all__ = [
    "ExternalTestRepo",
    "GitActions",
    "PostExecutionActions",
    "RequestLoadError",
    "RunRequest",
    "UploadFiles",
    "load_run_request",
    "parse_run_request",
]
