"""
Generator Service — orchestrates creative variant rendering.
Asks the rendering service for the number of image and video variants the
VariantPlan calls for, retries each failed variant once, and tags every
result with an img_/vid_ id so downstream code can classify by kind.
"""

import logging
import secrets
import time
from typing import Any, Optional
from urllib.parse import urljoin
import httpx
from smart_campaign.schemas import CreativeVariant, GenerationResult, VariantPlan
from smart_campaign.utils import IMAGE_PREFIX, VIDEO_PREFIX

logger = logging.getLogger(__name__)

COPY_ENDPOINT = "/generate-campaign-assets"
IMAGE_ENDPOINT = "/generate-static-ad"
VIDEO_ENDPOINT = "/generate-video-ad"

MAX_ATTEMPTS_PER_VARIANT = 2


class GenerationError(Exception):
    """No creative variant could be produced for a non-empty plan."""

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


def _pick(obj: Any, keys: tuple[str, ...]) -> str:
    if not isinstance(obj, dict):
        return ""
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def pick_image_url(data: Any, index: int = 1) -> str:
    """
    Extract an image URL from the shapes the static-ad endpoint returns:
    {imageUrl}, {absoluteUrl}, {url}, {image: {...}}, or a list under
    images / imageUrls / urls (the ``index``-th entry, 1-based).
    """
    keys = ("imageUrl", "absoluteUrl", "url")
    found = _pick(data, keys) or _pick((data or {}).get("image") if isinstance(data, dict) else None, keys)
    if found:
        return found
    if not isinstance(data, dict):
        return ""
    for list_key in ("images", "imageUrls", "urls"):
        items = data.get(list_key)
        if isinstance(items, list) and items:
            item = items[max(0, min(len(items) - 1, index - 1))]
            return item.strip() if isinstance(item, str) else _pick(item, keys)
    return ""


class GeneratorService:
    def __init__(
        self,
        base_url: str,
        timeout: float = 240.0,
        copy_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.copy_timeout = copy_timeout
        self._transport = transport

    def _public_url(self, value: str) -> str:
        """Relative asset paths are resolved against the rendering service origin."""
        if not value or value.startswith("http"):
            return value
        return urljoin(self.base_url + "/", value)

    async def _post(self, http: httpx.AsyncClient, endpoint: str, payload: dict, timeout: float) -> dict:
        resp = await http.post(f"{self.base_url}{endpoint}", json=payload, timeout=timeout)
        resp.raise_for_status()
        body = resp.json()
        return body if isinstance(body, dict) else {"data": body}

    async def generate_variants(
        self,
        form: Optional[dict] = None,
        answers: Optional[dict] = None,
        url: str = "",
        media_selection: str = "both",
        variant_plan: Optional[VariantPlan] = None,
    ) -> GenerationResult:
        """
        Render exactly ``variant_plan.images`` images and ``variant_plan.videos``
        videos, retrying each variant once. Anything still missing after the
        retry is reported as ``shortfall``.

        Raises GenerationError when at least one variant was requested and none
        could be produced.
        """
        form = form or {}
        answers = answers or {}
        plan = variant_plan or VariantPlan()
        seed_url = url or form.get("url") or ""
        result = GenerationResult(requested=plan)

        if plan.total <= 0:
            logger.info("Variant plan is empty — nothing to generate")
            return result

        logger.info(
            f"Generating variants (images={plan.images}, videos={plan.videos}, "
            f"media_selection={media_selection})"
        )

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            ad_copy = await self._fetch_copy(http, answers, seed_url, result)

            for i in range(1, plan.images + 1):
                variant = await self._with_retry(
                    "image", i, result,
                    lambda n=i: self._render_image(http, answers, seed_url, n, ad_copy),
                )
                if variant:
                    result.variants.append(variant)

            for i in range(1, plan.videos + 1):
                variant = await self._with_retry(
                    "video", i, result,
                    lambda n=i: self._render_video(http, answers, seed_url, n, ad_copy),
                )
                if variant:
                    result.variants.append(variant)

        got_images = sum(1 for v in result.variants if v.kind == "image")
        got_videos = sum(1 for v in result.variants if v.kind == "video")
        result.shortfall = VariantPlan(
            images=max(0, plan.images - got_images),
            videos=max(0, plan.videos - got_videos),
        )

        if not result.variants:
            raise GenerationError(
                f"Generated 0 of {plan.total} requested variants",
                errors=result.errors,
            )
        if result.shortfall.total:
            logger.warning(
                f"Generated images {got_images}/{plan.images}, videos {got_videos}/{plan.videos} "
                f"(errors={len(result.errors)})"
            )
        return result

    async def _fetch_copy(self, http: httpx.AsyncClient, answers: dict, seed_url: str,
                          result: GenerationResult) -> str:
        """Headline + body from the copy endpoint. Optional: failure yields empty copy."""
        try:
            data = await self._post(http, COPY_ENDPOINT, {"answers": answers, "url": seed_url}, self.copy_timeout)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Ad copy generation failed, continuing without copy: {e}")
            result.errors.append({"step": "copy", "error": str(e)})
            return ""
        return f"{data.get('headline') or ''}\n\n{data.get('body') or ''}".strip()

    async def _with_retry(self, kind: str, index: int, result: GenerationResult, attempt_fn) -> Optional[CreativeVariant]:
        for attempt in range(1, MAX_ATTEMPTS_PER_VARIANT + 1):
            try:
                return await attempt_fn()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"{kind} variant {index} attempt {attempt} failed: {e}")
                result.errors.append({"step": kind, "index": index, "attempt": attempt, "error": str(e)})
        return None

    def _regenerate_token(self, kind: str, index: int) -> str:
        return f"{int(time.time() * 1000)}_{kind}_{index}_{secrets.token_hex(3)}"

    async def _render_image(self, http: httpx.AsyncClient, answers: dict, seed_url: str,
                            index: int, ad_copy: str) -> CreativeVariant:
        data = await self._post(http, IMAGE_ENDPOINT, {
            "answers": answers,
            "url": seed_url,
            "regenerateToken": self._regenerate_token("img", index),
        }, self.timeout)
        image_url = self._public_url(pick_image_url(data, index))
        if not image_url.startswith("http"):
            raise ValueError(f"Static ad endpoint returned no usable image URL (keys={sorted(data)[:8]})")
        return CreativeVariant(
            variant_id=f"{IMAGE_PREFIX}{index}",
            kind="image",
            image_url=image_url,
            ad_copy=ad_copy,
        )

    async def _render_video(self, http: httpx.AsyncClient, answers: dict, seed_url: str,
                            index: int, ad_copy: str) -> CreativeVariant:
        data = await self._post(http, VIDEO_ENDPOINT, {
            "answers": {**answers, "cta": "Learn More!"},
            "url": seed_url,
            "regenerateToken": self._regenerate_token("vid", index),
        }, self.timeout)
        video_url = self._public_url(_pick(data, ("absoluteVideoUrl", "videoUrl", "url")))
        fb_video_id = _pick(data, ("fbVideoId",)) or None
        if not fb_video_id and not video_url.startswith("http"):
            raise ValueError(f"Video endpoint returned no video (keys={sorted(data)[:8]})")
        return CreativeVariant(
            variant_id=f"{VIDEO_PREFIX}{index}",
            kind="video",
            video_url=video_url or None,
            fb_video_id=fb_video_id,
            thumbnail_url=self._public_url(_pick(data, ("thumbnailUrl", "imageUrl"))) or None,
            ad_copy=ad_copy,
        )
