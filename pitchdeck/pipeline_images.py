from __future__ import annotations

from typing import Any, Dict, Optional

from tqdm import tqdm

from .errors import AgentError, CostLimitError, ErrorKind
from .image_gen_utils import build_image_prompt, decode_image, placeholder_png, validate_image_bytes, write_image
from .pipeline_common import TQDM_NCOLS, BaseAgent, logger, read_json, write_json
from .retry_utils import IMAGE_RETRY_POLICY, CallSpacer, RetryExecutor, RetryPolicy, classify_exception
from .time_utils import now_iso

MIN_CALL_INTERVAL = 3.0


class ImageGenerator(BaseAgent):
    name = "image_generator"
    provider = "google"
    default_model = "gemini-3-pro-image-preview"

    def __init__(self, ctx, settings=None, client=None, spacer: Optional[CallSpacer] = None) -> None:
        super().__init__(ctx, settings, client)
        self.spacer = spacer or CallSpacer(MIN_CALL_INTERVAL, sleep=ctx.sleep)

    def retry_policy(self) -> RetryPolicy:
        return IMAGE_RETRY_POLICY

    def request_image(self, prompt: str, slide_type: str) -> bytes:
        def attempt() -> bytes:
            self.spacer.wait()
            resp = self.client.generate_image(prompt)
            self.ctx.cost_tracker.add_usage(self.provider, self.model, resp.input_tokens, resp.output_tokens)
            return decode_image(resp.text)

        executor = RetryExecutor(self.retry_policy(), sleep=self.ctx.sleep)
        return executor.run(attempt, context={"agent": self.name, "image_type": slide_type})

    @staticmethod
    def _unsupported(exc: BaseException) -> bool:
        err = exc
        while err is not None:
            if classify_exception(err) == ErrorKind.UNSUPPORTED:
                return True
            err = getattr(err, "original", None)
        return False

    def generate_one(self, slide_type: str, data: Dict[str, Any]) -> Optional[str]:
        prompt = build_image_prompt(slide_type, data)
        self.log_prompt("image", prompt, image_type=slide_type)
        rel = f"output/assets/{slide_type}.png"
        if self.dry_run:
            self.log_dry_run(f"image {slide_type}", prompt)
            return rel

        try:
            image = self.request_image(prompt, slide_type)
        except CostLimitError:
            raise
        except AgentError as exc:
            if not self._unsupported(exc):
                raise
            logger.warning("Image generation not supported for %s; using placeholder", slide_type)
            image = placeholder_png(slide_type)

        validate_image_bytes(image)
        write_image(image, self.paths.assets / f"{slide_type}.png")
        return rel

    def execute(self) -> Dict[str, Any]:
        prompts = read_json(self.paths.artifact("image-prompts.json"))
        if not isinstance(prompts, dict) or not prompts:
            raise AgentError("image-prompts.json holds no prompts")

        cost_before = self.ctx.cost_tracker.total_cost
        images: Dict[str, Optional[str]] = {}
        failed = []
        for slide_type, data in tqdm(prompts.items(), desc="Images", unit="img", ncols=TQDM_NCOLS, dynamic_ncols=False):
            try:
                images[slide_type] = self.generate_one(slide_type, data or {})
            except CostLimitError:
                raise
            except AgentError as exc:
                logger.error("Image %s failed: %s", slide_type, exc)
                images[slide_type] = None
                failed.append({"type": slide_type, "error": str(exc), "prompt": build_image_prompt(slide_type, data or {})})

        manifest = {
            "generated_at": now_iso(),
            "model": self.model,
            "images": images,
            "failed": [f["type"] for f in failed],
            "cost": self.ctx.cost_tracker.total_cost - cost_before,
            "synthetic": self.dry_run,
        }
        if self.dry_run:
            logger.info("[DRY-RUN] %s images would be generated; nothing written", len(images))
            return manifest

        write_json(self.paths.artifact("generated-images.json"), manifest)
        if failed:
            write_json(self.paths.artifact("failed-image-prompts.json"), {"failed_at": now_iso(), "images": failed})
        ok = len([v for v in images.values() if v])
        logger.info("Generated %s/%s images", ok, len(images))
        return manifest
