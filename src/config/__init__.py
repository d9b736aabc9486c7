"""Configuration loading for the batch pipeline.

Main Functions
--------------

    - load_config(): Load PipelineConfig from config.yaml and environment
    - build_orchestrator(): Wire a BatchOrchestrator from a PipelineConfig

Usage Examples
--------------

    >>> from config import load_config, build_orchestrator
    >>> config = load_config()
    >>> orchestrator = build_orchestrator(config, [MyProcessor()], SchemaValidator())
"""

from config.config import (
    DEFAULT_CONFIG_FILE,
    PipelineConfig,
    build_orchestrator,
    load_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "PipelineConfig",
    "build_orchestrator",
    "load_config",
]
