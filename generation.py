# generation.py
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

import replicate
from replicate.exceptions import ReplicateException

from config import clamp
from errors import BadRequest, ExtractionError, UpstreamError
from logs import log_event

LOGGER = logging.getLogger(__name__)

ART_MODELS = {
    # fast and cheap
    "schnell": (
        "black-forest-labs/flux-schnell",
        {"num_outputs": 1, "output_format": "png", "output_quality": 90},
    ),
    # slower, better
    "dev": (
        "black-forest-labs/flux-dev",
        {"num_outputs": 1, "output_format": "png", "guidance": 3.5, "num_inference_steps": 28},
    ),
}
DEFAULT_ART_MODEL = "dev"
ASPECT_RATIOS = {"1:1", "3:4", "4:3", "16:9", "9:16"}

QR_MODEL = "zylim0702/qr_code_controlnet:628e604e13cf63d8ec58bd4d238474e8986b054bc5e1326e50995fdbc851c557"
QR_STEPS = 20
QR_GUIDANCE = 9
QR_STRENGTH_DEFAULT = 1.8
QR_STRENGTH_MIN = 0.8
QR_STRENGTH_MAX = 2.5
DEFAULT_NEGATIVE_PROMPT = "ugly, disfigured, low quality, blurry, nsfw"
SEED_SPACE = 1_000_000

# -----------------------------
# Provider output shapes
# -----------------------------


@dataclass(frozen=True)
class TextOutput:
    value: str


@dataclass(frozen=True)
class UrlListOutput:
    items: tuple


@dataclass(frozen=True)
class AccessorOutput:
    obj: Any


GenerationOutput = Union[TextOutput, UrlListOutput, AccessorOutput]


def classify_output(output: Any) -> GenerationOutput:
    if isinstance(output, str):
        return TextOutput(output)
    if isinstance(output, (list, tuple)):
        return UrlListOutput(tuple(output))
    return AccessorOutput(output)


def _accessor_url(obj: Any) -> Optional[str]:
    """URL from one result item: a string, a mapping, or a file-like output object."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj or None
    if isinstance(obj, Mapping):
        for k in ("url", "href"):
            v = obj.get(k)
            if isinstance(v, str) and v:
                return v
        return None
    for attr in ("url", "href"):
        v = getattr(obj, attr, None)
        if callable(v):
            v = v()
        if isinstance(v, str) and v:
            return v
    text = str(obj)
    return text if text.startswith("http") else None


def extract_image_url(output: Any) -> str:
    shape = classify_output(output)
    if isinstance(shape, TextOutput):
        url = shape.value or None
    elif isinstance(shape, UrlListOutput):
        url = _accessor_url(shape.items[0]) if shape.items else None
    else:
        url = _accessor_url(shape.obj)
    if not url:
        raise ExtractionError("No image URL in response")
    return url


def _check_text(**fields) -> None:
    for name, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise BadRequest(f"{name} must be a string")


def resolve_seed(seed: Any) -> int:
    if seed is None or seed == "":
        return random.randrange(SEED_SPACE)
    try:
        return int(seed) % SEED_SPACE
    except (TypeError, ValueError):
        raise BadRequest("Seed must be an integer")


# -----------------------------
# Gateway
# -----------------------------


class ReplicateGenerator:
    def __init__(self, api_token: str, client: Optional[Any] = None):
        self.client = client or replicate.Client(api_token=api_token or None)

    def _run(self, model_ref: str, inputs: dict) -> Any:
        try:
            output = self.client.run(model_ref, input=inputs)
        except ReplicateException as e:
            log_event(LOGGER, logging.ERROR, "generation.provider_failed", model=model_ref, error=str(e))
            raise UpstreamError(f"Generation failed: {e}")
        log_event(LOGGER, logging.INFO, "generation.output",
                  model=model_ref, output_type=type(output).__name__)
        return output

    def generate_art(self, prompt: str, model: Optional[str] = None, aspect_ratio: str = "1:1",
                     seed: Any = None) -> dict:
        _check_text(prompt=prompt, model=model, aspectRatio=aspect_ratio)
        if not prompt:
            raise BadRequest("Prompt is required")
        model = model or DEFAULT_ART_MODEL
        if model not in ART_MODELS:
            raise BadRequest(f"Unknown model: {model}")
        aspect_ratio = aspect_ratio or "1:1"
        if aspect_ratio not in ASPECT_RATIOS:
            raise BadRequest(f"Unsupported aspect ratio: {aspect_ratio}")
        model_ref, defaults = ART_MODELS[model]
        inputs = {"prompt": prompt, "aspect_ratio": aspect_ratio, **defaults}
        if seed is not None and seed != "":
            inputs["seed"] = resolve_seed(seed)
        image = extract_image_url(self._run(model_ref, inputs))
        result = {"image": image}
        if "seed" in inputs:
            result["seed"] = inputs["seed"]
        return result

    def generate_qr_art(self, target_url: str, prompt: str, negative_prompt: Optional[str] = None,
                        qr_strength: Any = None, seed: Any = None) -> dict:
        _check_text(url=target_url, prompt=prompt, negativePrompt=negative_prompt)
        if not target_url:
            raise BadRequest("URL is required")
        if not prompt:
            raise BadRequest("Prompt is required")
        resolved_seed = resolve_seed(seed)
        inputs = {
            "url": target_url,
            "prompt": prompt,
            "negative_prompt": negative_prompt or DEFAULT_NEGATIVE_PROMPT,
            "num_inference_steps": QR_STEPS,
            "guidance_scale": QR_GUIDANCE,
            "qr_conditioning_scale": clamp(qr_strength, QR_STRENGTH_MIN, QR_STRENGTH_MAX, QR_STRENGTH_DEFAULT),
            "seed": resolved_seed,
        }
        image = extract_image_url(self._run(QR_MODEL, inputs))
        return {"image": image, "seed": resolved_seed}
