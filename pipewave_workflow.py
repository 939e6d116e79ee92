# pipewave_workflow.py
# Workflow for pipewave itself: lint and tests in parallel, packaging after both pass
from __future__ import annotations
from pipewave.dsl import pipeline, job, sh, checkout, setup, cache, on_push, on_pull_request

def workflow():
    return pipeline(
        "pipewave",
        job(
            "lint",
            checkout(),
            setup("Set up Python", "python"),
            cache(paths=[".venv"], key_files=["pyproject.toml"]),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
        ),
        job(
            "test",
            checkout(),
            setup("Set up Python", "python"),
            cache(paths=[".venv", ".pytest_cache"], key_files=["pyproject.toml"]),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            display_name="Unit tests",
        ),
        job(
            "package",
            checkout(),
            sh("Build sdist and wheel", "python -m build"),
            needs=["lint", "test"],
        ),
        on=[on_push("main", "dev"), on_pull_request("main")],
        env={"PYTHONDONTWRITEBYTECODE": "1"},
    )
