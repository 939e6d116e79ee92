from .dsl import job, sh, checkout, setup, cache, pipeline, wf, on_push, on_pull_request, JobBuilder, build
from .errors import ConfigError, CycleError
from .loader import load_pipeline
from .model import Event, EventKind, Job, Outcome, Pipeline, PipelineResult, Status, Step, TriggerRule
from .runner import run_pipeline
from .trigger import matches

__all__ = [
    "job", "sh", "checkout", "setup", "cache", "pipeline", "wf", "on_push", "on_pull_request",
    "JobBuilder", "build", "ConfigError", "CycleError", "load_pipeline", "Event", "EventKind",
    "Job", "Outcome", "Pipeline", "PipelineResult", "Status", "Step", "TriggerRule",
    "run_pipeline", "matches",
]
