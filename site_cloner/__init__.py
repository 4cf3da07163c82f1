from .cloner import CloneResult, ProgressUpdate, create_job_id, run_clone_job
from .config import CloneOptions, MaterializationSettings, UrlHeuristics
from .errors import CloneError, CloneJobError

__version__ = "0.1.0"

__all__ = [
    "CloneError",
    "CloneJobError",
    "CloneOptions",
    "CloneResult",
    "MaterializationSettings",
    "ProgressUpdate",
    "UrlHeuristics",
    "create_job_id",
    "run_clone_job",
]
