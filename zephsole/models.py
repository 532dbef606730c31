"""
Image generation model configuration and request routing
"""
from typing import Dict, Optional

ASPECT_RATIOS = ["auto", "21:9", "16:9", "3:2", "4:3", "5:4", "1:1", "4:5", "3:4", "2:3", "9:16"]

MODEL_CONFIGS: Dict[str, Dict] = {
    "nano-banana-pro": {
        "id": "nano-banana-pro",
        "name": "Nano Banana Pro (Text-to-Image)",
        "endpoint": "https://fal.run/fal-ai/nano-banana-pro",
        "model_id": "fal-ai/nano-banana-pro",
        "category": "text-to-image",
        "requires_reference_image": False,
        "supported_aspect_ratios": ASPECT_RATIOS,
        "default_aspect_ratio": "auto",
        "default_resolution": "1K",
        "default_output_format": "png",
        "max_images": 4,
    },
    "nano-banana-pro-edit": {
        "id": "nano-banana-pro-edit",
        "name": "Nano Banana Pro (Image-to-Image)",
        "endpoint": "https://fal.run/fal-ai/nano-banana-pro/edit",
        "model_id": "fal-ai/nano-banana-pro/edit",
        "category": "image-to-image",
        "requires_reference_image": True,
        "supported_aspect_ratios": ASPECT_RATIOS,
        "default_aspect_ratio": "auto",
        "default_resolution": "1K",
        "default_output_format": "png",
        "max_images": 4,
    },
}

CURRENT_MODEL_ID = "nano-banana-pro"

VIDEO_ENDPOINT = "https://fal.run/fal-ai/kling-video/v2.5/standard/text-to-video"
THREE_D_ENDPOINT = "https://fal.run/fal-ai/hunyuan3d/v2"


class GenerationKind:
    IMAGE = "image"
    VIDEO = "video"
    THREE_D = "three_d"


def get_model_config(model_id: Optional[str] = None) -> Dict:
    if model_id and model_id in MODEL_CONFIGS:
        return MODEL_CONFIGS[model_id]
    return MODEL_CONFIGS[CURRENT_MODEL_ID]


def map_aspect_ratio(aspect_ratio: Optional[str], model_config: Optional[Dict] = None) -> str:
    """Return a ratio the model accepts, falling back to its default"""
    model_config = model_config or get_model_config()
    if not aspect_ratio or aspect_ratio == "auto":
        return model_config["default_aspect_ratio"]
    if aspect_ratio in model_config["supported_aspect_ratios"]:
        return aspect_ratio
    return model_config["default_aspect_ratio"]


def route_generation_request(kind: str, reference_image_count: int = 0) -> Dict:
    if kind == GenerationKind.IMAGE:
        model_id = "nano-banana-pro-edit" if reference_image_count > 0 else "nano-banana-pro"
        return {
            "kind": GenerationKind.IMAGE,
            "provider": "fal",
            "model_id": model_id,
            "endpoint": MODEL_CONFIGS[model_id]["endpoint"],
        }
    if kind == GenerationKind.VIDEO:
        return {
            "kind": GenerationKind.VIDEO,
            "provider": "fal",
            "model_id": "fal-video-default",
            "endpoint": VIDEO_ENDPOINT,
            "deferred": True,
        }
    if kind == GenerationKind.THREE_D:
        return {
            "kind": GenerationKind.THREE_D,
            "provider": "fal",
            "model_id": "fal-3d-default",
            "endpoint": THREE_D_ENDPOINT,
            "deferred": True,
        }
    raise ValueError(f"Unknown generation kind: {kind}")
