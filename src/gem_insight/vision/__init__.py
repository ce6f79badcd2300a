"""Vision capability contract, prompts, response models and extraction engine."""

from gem_insight.vision.client import OpenAIVisionClient, VisionClient, VisionImage, VisionReply, VisionRequest
from gem_insight.vision.engine import TaskResult, VisionExtractionEngine

__all__ = [
    "OpenAIVisionClient",
    "TaskResult",
    "VisionClient",
    "VisionExtractionEngine",
    "VisionImage",
    "VisionReply",
    "VisionRequest",
]
