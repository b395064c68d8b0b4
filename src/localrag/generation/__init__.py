"""Text generation providers and the orchestrator that selects between them."""

from .orchestrator import GenerationOrchestrator, OrchestratorStatus
from .providers import (
    GenerateOptions,
    GenerationProvider,
    LocalModelConfig,
    LocalModelProvider,
    NoneProvider,
    OnDeviceConfig,
    OnDeviceProvider,
)

__all__ = [
    "GenerateOptions",
    "GenerationOrchestrator",
    "GenerationProvider",
    "LocalModelConfig",
    "LocalModelProvider",
    "NoneProvider",
    "OnDeviceConfig",
    "OnDeviceProvider",
    "OrchestratorStatus",
]
