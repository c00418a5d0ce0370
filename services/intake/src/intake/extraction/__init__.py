"""Vision extraction client and reply parsing."""

from .client import VISION_MODELS, VisionExtractionClient
from .parsing import find_json_object, parse_extraction_reply
from .prompt import EXTRACTION_PROMPT

__all__ = [
    "EXTRACTION_PROMPT",
    "VISION_MODELS",
    "VisionExtractionClient",
    "find_json_object",
    "parse_extraction_reply",
]
