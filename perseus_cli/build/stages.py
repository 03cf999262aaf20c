"""
Build stage definitions.

Each stage wraps one external command. The standard sequence is:

    engine -> render -> browser -> bindgen -> optimize -> bundle -> compress

``optimize`` and ``bundle`` only run for release builds and ``compress``
only when requested.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from perseus_cli.build.config import BUNDLE_NAME, WASM_TARGET, ProjectConfig
from perseus_cli.core.utils import ENGINE_OPERATION_VAR
from perseus_cli.process.supervisor import CommandSpec

# Output kinds a stage can affect
SERVER = "server"
CLIENT = "client"


@dataclass(frozen=True)
class BuildStage:
    """One ordered step of the pipeline."""

    name: str
    command: CommandSpec
    inputs: tuple[Path, ...] = ()
    outputs: tuple[Path, ...] = ()
    affects: frozenset[str] = frozenset()

    def relevant(self, paths: Iterable[Path]) -> bool:
        """True if any changed path lies under one of this stage's inputs."""
        inputs = [p.resolve() for p in self.inputs]
        for changed in paths:
            changed = Path(changed).resolve()
            for inp in inputs:
                if changed == inp or inp in changed.parents:
                    return True
        return False


@dataclass(frozen=True)
class ToolPaths:
    """Resolved locations of the external wasm tools."""

    wasm_bindgen: str
    wasm_opt: Optional[str] = None


# =============================================================================
# Commands
# =============================================================================


def engine_command(config: ProjectConfig, operation: str, **env: str) -> CommandSpec:
    """Invoke the compiled engine binary in one of its operation modes."""
    return CommandSpec(
        program=str(config.engine_binary),
        cwd=config.project_root,
        env={ENGINE_OPERATION_VAR: operation, **env},
    )


def _cargo(config: ProjectConfig, target_dir: Path, *args: str) -> CommandSpec:
    argv = ["build", *args]
    if config.release:
        argv.append("--release")
    return CommandSpec(
        program=config.cargo_path,
        args=tuple(argv),
        cwd=config.project_root,
        env={"CARGO_TARGET_DIR": str(target_dir)},
    )


def _assets(config: ProjectConfig, action: str) -> CommandSpec:
    return CommandSpec(
        program=sys.executable,
        args=("-m", "perseus_cli.build.assets", action, str(config.pkg_dir)),
        cwd=config.project_root,
    )


# =============================================================================
# Stages
# =============================================================================


def engine_stages(config: ProjectConfig) -> list[BuildStage]:
    """Compile the engine and let it render static pages."""
    root = config.project_root
    compile_engine = BuildStage(
        name="engine",
        command=_cargo(config, config.engine_target_dir).with_args(*config.cargo_engine_args),
        inputs=(*config.source_inputs(), *config.custom_watch_paths()),
        outputs=(config.engine_binary,),
        affects=frozenset({SERVER}),
    )
    render = BuildStage(
        name="render",
        command=engine_command(config, "build"),
        inputs=(config.engine_binary, root / "static", root / "translations"),
        outputs=(config.static_dir,),
        affects=frozenset({SERVER}),
    )
    return [compile_engine, render]


def browser_stages(config: ProjectConfig, tools: ToolPaths) -> list[BuildStage]:
    """Compile the client bundle and post-process it."""
    stages = [
        BuildStage(
            name="browser",
            command=_cargo(
                config, config.browser_target_dir, "--target", WASM_TARGET
            ).with_args(*config.cargo_browser_args),
            inputs=tuple(config.source_inputs()),
            outputs=(config.browser_wasm,),
            affects=frozenset({CLIENT}),
        ),
        BuildStage(
            name="bindgen",
            command=CommandSpec(
                program=tools.wasm_bindgen,
                args=(
                    str(config.browser_wasm),
                    "--out-dir", str(config.pkg_dir),
                    "--out-name", BUNDLE_NAME,
                    "--target", "web",
                    "--no-typescript",
                    *config.wasm_bindgen_args,
                ),
                cwd=config.project_root,
            ),
            inputs=(config.browser_wasm,),
            outputs=(config.pkg_dir,),
            affects=frozenset({CLIENT}),
        ),
    ]

    if config.release:
        if tools.wasm_opt:
            stages.append(
                BuildStage(
                    name="optimize",
                    command=CommandSpec(
                        program=tools.wasm_opt,
                        args=(
                            *config.wasm_opt_args,
                            str(config.bundle_wasm),
                            "-o", str(config.bundle_wasm),
                        ),
                        cwd=config.project_root,
                    ),
                    inputs=(config.bundle_wasm,),
                    outputs=(config.bundle_wasm,),
                    affects=frozenset({CLIENT}),
                )
            )
        stages.append(
            BuildStage(
                name="bundle",
                command=_assets(config, "minify"),
                inputs=(config.pkg_dir,),
                outputs=(config.pkg_dir,),
                affects=frozenset({CLIENT}),
            )
        )

    if config.compress:
        stages.append(
            BuildStage(
                name="compress",
                command=_assets(config, "compress"),
                inputs=(config.pkg_dir,),
                outputs=(config.pkg_dir,),
                affects=frozenset({CLIENT}),
            )
        )
    return stages


def standard_stages(config: ProjectConfig, tools: ToolPaths) -> list[BuildStage]:
    """The full stage sequence for ``config``."""
    return [*engine_stages(config), *browser_stages(config, tools)]
