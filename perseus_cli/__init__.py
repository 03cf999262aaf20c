"""
perseus_cli - Build-and-serve orchestration for perseus apps.

Subpackages:
    process: Process-group supervision
    watch: Debounced filesystem watching
    build: Configuration, stages, and the build pipeline
    serve: Development server and live reload
    export: Static export and deterministic archives
    plugins: Prebuilt toolchain downloads
    commands: CLI command handlers
"""

__version__ = "0.4.3"
