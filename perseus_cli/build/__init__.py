"""
Build pipeline for perseus projects.

Modules:
    config: ProjectConfig and project detection
    stages: Stage definitions (engine, render, browser, bindgen, ...)
    pipeline: Ordered execution, supersession, and publication
    assets: Minification and precompression run as stage processes
"""

from perseus_cli.build.config import ProjectConfig, detect_project, load_config
from perseus_cli.build.pipeline import (
    BuildPipeline,
    BuildRun,
    RunOutcome,
    RunQueue,
    StageResult,
    StageStatus,
    report,
)
from perseus_cli.build.stages import (
    CLIENT,
    SERVER,
    BuildStage,
    ToolPaths,
    engine_command,
    engine_stages,
    standard_stages,
)

__all__ = [
    "BuildPipeline",
    "BuildRun",
    "BuildStage",
    "CLIENT",
    "ProjectConfig",
    "RunOutcome",
    "RunQueue",
    "SERVER",
    "StageResult",
    "StageStatus",
    "ToolPaths",
    "detect_project",
    "engine_command",
    "engine_stages",
    "load_config",
    "report",
    "standard_stages",
]
