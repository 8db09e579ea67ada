from .base import ProviderAdapter
from .context import GenerationContext, LoggingProgressSink, ProgressSink
from .dispatch import BackendInfo, GenerationDispatcher, generate_image
from .factory import build_adapter_registry, build_provider_adapter
from .schema import (
    GeneratedImage,
    GenerationRequest,
    GenerationResponse,
    InferenceMetadata,
    LoraSpec,
    RoutingContext,
)
from .validation import read_generation_request, validate_generation_request

__all__ = [
    "BackendInfo",
    "GeneratedImage",
    "GenerationContext",
    "GenerationDispatcher",
    "GenerationRequest",
    "GenerationResponse",
    "InferenceMetadata",
    "LoggingProgressSink",
    "LoraSpec",
    "ProgressSink",
    "ProviderAdapter",
    "RoutingContext",
    "build_adapter_registry",
    "build_provider_adapter",
    "generate_image",
    "read_generation_request",
    "validate_generation_request",
]
