"""Prompt and request payload construction for generation stages.

The polling adapter is provider-agnostic; everything provider specific
(prompt wording, payload fields, aspect ratio) is shaped here.
"""

from typing import Any, Optional

from atelier.core.config import ProviderConfig
from atelier.models.characteristics import ImageCharacteristics, ProductCharacteristics
from atelier.models.generation_job import GenerationJob, ImageRole, JobStage
from atelier.services.image_generation.compositor import to_base64

MAX_PROMPT_LENGTH = 1000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Assembled stage prompt

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        ValueError: If prompt is empty, None, or exceeds 1000 characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def _product(
    characteristics: dict[ImageRole, list[ImageCharacteristics]],
) -> Optional[ProductCharacteristics]:
    products = characteristics.get(ImageRole.PRODUCT) or []
    product = products[0] if products else None
    return product if isinstance(product, ProductCharacteristics) else None


def _garment_description(product: Optional[ProductCharacteristics]) -> str:
    if product is not None:
        return f"the {product.primary_color} garment shown in the middle panel"
    return "the garment shown in the middle panel"


def _emphasis(weight: float) -> str:
    if weight >= 0.85:
        return "CRITICAL"
    if weight >= 0.6:
        return "HIGH"
    return "NORMAL"


def build_stage_prompt(job: GenerationJob, stage: JobStage) -> str:
    """Build the prompt for the generating_model or applying_product stage."""
    params = job.parameters
    pose = job.settings.pose.lower()
    product = _product(job.characteristics)
    garment = _garment_description(product)
    has_detail = bool(job.characteristics.get(ImageRole.DETAIL))

    if stage == JobStage.GENERATING_MODEL:
        parts = [
            "The reference sheet shows a face (top), a garment (middle) and close-up details "
            "(bottom).",
            f"Generate one photorealistic fashion model in a {pose} pose.",
            f"Face consistency priority: {_emphasis(params.consistency_weight)}. "
            "Keep the exact same face, hair and skin tone as the top panel.",
            "Professional studio lighting, full body from head to waist, not cropped.",
        ]
    elif stage == JobStage.APPLYING_PRODUCT:
        parts = [
            f"Dress the model in {garment}.",
            f"Product accuracy priority: {_emphasis(params.accuracy_weight)}. "
            "Match colours, pattern, fit and branding exactly.",
        ]
        if product is not None and product.orientation == "landscape":
            # Wide product shots are usually flat-lays
            parts.append("The garment is photographed laid flat; drape it naturally on the body.")
        if has_detail:
            parts.append("Reproduce the embroidery/print details from the bottom panel.")
        parts.append(f"Preserve the same face, {pose} pose and background.")
    else:
        raise ValueError(f"No provider request is made during the {stage.value} stage")

    if job.settings.prompt:
        parts.append(job.settings.prompt.strip())
    return validate_prompt(" ".join(parts))


def build_stage_payload(
    job: GenerationJob,
    stage: JobStage,
    provider: ProviderConfig,
    reference_image_url: Optional[str] = None,
) -> dict[str, Any]:
    """Build the JSON body submitted for one stage.

    Args:
        job: Job whose composite and parameters shape the request
        stage: generating_model or applying_product
        provider: Target provider defaults (aspect ratio, output format)
        reference_image_url: Output of the previous stage, if any
    """
    payload: dict[str, Any] = {
        "prompt": build_stage_prompt(job, stage),
        "input_image": to_base64(job.composited_payload),
        "aspect_ratio": provider.aspect_ratio,
        "output_format": provider.output_format,
        "consistency_weight": job.parameters.consistency_weight,
        "accuracy_weight": job.parameters.accuracy_weight,
        "attempt": job.attempt,
    }
    if reference_image_url:
        payload["reference_image_url"] = reference_image_url
    return payload
