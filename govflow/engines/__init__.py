"""Engine factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GovflowConfig, load_config
from .base import WorkflowEngine
from .inmemory import (
    ApprovalStep,
    FormStep,
    InMemoryEngine,
    TaskScript,
    WorkflowDefinition,
    load_definitions,
    load_tasks,
)


def get_engine(
    backend: Optional[str] = None, config: Optional[GovflowConfig] = None
) -> WorkflowEngine:
    """Factory function to get the configured engine handle."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("GOVFLOW_ENGINE")
        or config.engine.backend
    ).lower()

    if backend == "inmemory":
        definitions, tasks = [], []
        if config.engine.definitions_path:
            definitions = load_definitions(config.engine.definitions_path)
            tasks = load_tasks(config.engine.definitions_path)
        return InMemoryEngine(definitions=definitions, tasks=tasks)
    else:
        raise ValueError(f"Unsupported engine backend: {backend}")


__all__ = [
    "WorkflowEngine",
    "InMemoryEngine",
    "WorkflowDefinition",
    "FormStep",
    "ApprovalStep",
    "TaskScript",
    "load_definitions",
    "load_tasks",
    "get_engine",
]
