"""
Fal generation calls (image, video, 3D) routed through the key failover pool
"""
import asyncio
from typing import Any, Dict, List, Optional

import httpx

from zephsole.config import FAL_QUEUE_URL, REQUEST_TIMEOUT
from zephsole.fal_manager import with_fal_failover
from zephsole.logger import get_logger
from zephsole.models import GenerationKind, MODEL_CONFIGS, map_aspect_ratio, route_generation_request

logger = get_logger(__name__)

QUEUE_POLL_INTERVAL = 1.0
QUEUE_MAX_POLLS = 300
IMAGE_MAX_POLLS = 120


class FalGenerationError(RuntimeError):
    pass


def extract_primary_url(payload: Any) -> Optional[str]:
    """Find the first output URL in a fal response, whatever its shape"""
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("url"), str):
        return payload["url"]
    for field in ("images", "outputs"):
        items = payload.get(field)
        if isinstance(items, list) and items:
            first = items[0]
            if isinstance(first, str):
                return first
            if isinstance(first, dict) and isinstance(first.get("url"), str):
                return first["url"]
    if payload.get("data"):
        return extract_primary_url(payload["data"])
    return None


def _has_images(result: Dict[str, Any]) -> bool:
    images = result.get("images")
    return isinstance(images, list) and len(images) > 0


async def submit_fal_queue_job(
    client: httpx.AsyncClient,
    fal_key: str,
    endpoint: str,
    payload: Dict[str, Any],
    max_polls: int = QUEUE_MAX_POLLS,
    poll_interval: float = QUEUE_POLL_INTERVAL,
) -> Dict[str, Any]:
    """POST a job; if fal answers with a request id, poll the queue until it finishes."""
    response = await client.post(
        endpoint,
        headers={"Authorization": f"Key {fal_key}", "Content-Type": "application/json"},
        json=payload,
    )
    if not response.is_success:
        raise FalGenerationError(
            f"Fal request failed: {response.status_code} {response.reason_phrase} - {response.text[:500]}"
        )
    initial = response.json()
    request_id = initial.get("request_id") or initial.get("requestId")
    if not request_id or _has_images(initial):
        return {"request_id": request_id, "result": initial}

    status_url = f"{FAL_QUEUE_URL}/{request_id}"
    for _ in range(max_polls):
        await asyncio.sleep(poll_interval)
        status_response = await client.get(status_url, headers={"Authorization": f"Key {fal_key}"})
        if status_response.status_code == 404:
            continue
        if not status_response.is_success:
            raise FalGenerationError(
                f"Fal status check failed: {status_response.status_code} - {status_response.text[:500]}"
            )
        status_payload = status_response.json()
        if status_payload.get("status") == "COMPLETED":
            return {"request_id": request_id, "result": status_payload.get("data") or status_payload}
        if status_payload.get("status") == "FAILED":
            raise FalGenerationError(f"Fal generation failed: {status_payload.get('error') or status_payload}")

    raise FalGenerationError("Fal generation timed out while waiting for queue completion")


async def _run_with_pool(endpoint: str, payload: Dict[str, Any], max_polls: int,
                         client: Optional[httpx.AsyncClient]) -> Dict[str, Any]:
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
    try:
        return await with_fal_failover(
            lambda fal_key, _meta: submit_fal_queue_job(client, fal_key, endpoint, payload, max_polls=max_polls)
        )
    finally:
        if owns_client:
            await client.aclose()


async def generate_image_with_fal(
    prompt: str,
    aspect_ratio: Optional[str] = None,
    reference_image_urls: Optional[List[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    image_urls = [url for url in (reference_image_urls or []) if url]
    route = route_generation_request(GenerationKind.IMAGE, len(image_urls))
    model_config = MODEL_CONFIGS[route["model_id"]]

    if model_config["requires_reference_image"] and not image_urls:
        raise ValueError(f"{model_config['name']} requires at least one reference image URL.")

    payload: Dict[str, Any] = {
        "prompt": prompt,
        "num_images": 1,
        "aspect_ratio": map_aspect_ratio(aspect_ratio, model_config),
        "resolution": model_config["default_resolution"],
        "output_format": model_config["default_output_format"],
    }
    if image_urls:
        payload["image_urls"] = image_urls

    logger.info(f"Image generation via {model_config['model_id']} ({len(image_urls)} references)")
    output = await _run_with_pool(route["endpoint"], payload, IMAGE_MAX_POLLS, client)
    url = extract_primary_url(output["result"])
    if not url:
        raise FalGenerationError("No image URL in fal response")

    return {
        "provider": route["provider"],
        "kind": GenerationKind.IMAGE,
        "model": model_config["model_id"],
        "aspect_ratio": payload["aspect_ratio"],
        "request_id": output["request_id"],
        "url": url,
    }


async def generate_video_with_fal(
    prompt: str,
    reference_image_url: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    route = route_generation_request(GenerationKind.VIDEO)
    payload: Dict[str, Any] = {"prompt": prompt, "aspect_ratio": aspect_ratio or "16:9"}
    if reference_image_url:
        payload["image_url"] = reference_image_url

    output = await _run_with_pool(route["endpoint"], payload, QUEUE_MAX_POLLS, client)
    return {
        "provider": route["provider"],
        "kind": GenerationKind.VIDEO,
        "model_id": route["model_id"],
        "endpoint": route["endpoint"],
        "request_id": output["request_id"],
        "primary_url": extract_primary_url(output["result"]),
        "result": output["result"],
    }


async def generate_three_d_with_fal(
    reference_image_url: str,
    prompt: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    route = route_generation_request(GenerationKind.THREE_D)
    payload: Dict[str, Any] = {"image_url": reference_image_url}
    if prompt:
        payload["prompt"] = prompt

    output = await _run_with_pool(route["endpoint"], payload, QUEUE_MAX_POLLS, client)
    return {
        "provider": route["provider"],
        "kind": GenerationKind.THREE_D,
        "model_id": route["model_id"],
        "endpoint": route["endpoint"],
        "request_id": output["request_id"],
        "primary_url": extract_primary_url(output["result"]),
        "result": output["result"],
    }
