"""
Sequential replay of generation parameters against the web UI.

One ``GenerationQueue`` per run. It keeps a local mirror of the server's
loaded model and VAE so switches only happen when the next item needs them,
and it runs items strictly one after another.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from config import Config
from core.assembler import parse_and_sort
from core.file_ops import find_with_ext, list_vaes, move_file, write_file
from core.image_utils import (
    compare_images,
    decode_base64_image,
    encode_base64_image,
    encode_for_ext,
    is_reproducible,
)
from core.log_utils import SEPARATOR, SUCCESS, format_elapsed, success
from core.models import (
    SENTINEL_VAES,
    VAE,
    FileNames,
    GenerationParameters,
    Model,
    ReplayMode,
    ReplayOutcome,
    ReplayReport,
    SessionState,
)
from core.overrides import build_override_tree
from core.progress import ProgressMonitor
from sdapi_client import SDWebUIClient

logger = logging.getLogger(__name__)

FACE_RESTORE_METHODS = ("codeformer", "gfpgan", "adetailer")
ADETAILER_MODEL = "face_yolov8n.pt"


class GenerationError(RuntimeError):
    """A single replay item failed."""


class ModelNotFoundError(GenerationError):
    pass


class SerialTaskChain:
    """
    Run coroutine factories one at a time, in the order they were added.

    Each task waits for its predecessor to settle (success or failure) before
    starting, so one failing item never blocks the ones behind it.
    """

    def __init__(self) -> None:
        self._tail: asyncio.Task[Any] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def add(self, fn: Callable[[], Awaitable[Any]]) -> asyncio.Task[Any]:
        previous = self._tail

        async def _run() -> Any:
            if previous is not None:
                await asyncio.wait([previous])
            return await fn()

        task = asyncio.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._tail = task
        return task

    def is_pending(self) -> bool:
        return self._tail is not None and not self._tail.done()

    async def cancel(self) -> None:
        """Cancel every queued or running task and wait for them to settle."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class GeneratedImage:
    image: bytes
    params: str


class GenerationQueue:
    def __init__(
        self,
        client: SDWebUIClient,
        cfg: Config,
        *,
        mode: ReplayMode,
        models: list[Model],
        vaes: list[VAE],
        state: SessionState | None = None,
        root: Path = Path("."),
    ) -> None:
        self.client = client
        self.cfg = cfg
        self.mode = mode
        self.models = models
        self.vaes = vaes
        self.state = state or SessionState()
        self.root = root
        self.chain = SerialTaskChain()

    def is_pending(self) -> bool:
        return self.chain.is_pending()

    async def cancel(self) -> None:
        await self.chain.cancel()

    # -- request building ----------------------------------------------------

    def build_txt2img_request(self, params: GenerationParameters) -> dict[str, Any]:
        scripts: dict[str, Any] = {}

        cutoff = params.cutoff
        if cutoff is not None and cutoff.enabled:
            scripts["Cutoff"] = {
                "args": [
                    True,
                    ", ".join(cutoff.targets),
                    cutoff.weight,
                    cutoff.disable_for_neg,
                    cutoff.strong,
                    cutoff.padding,
                    cutoff.interpolation,
                    False,
                ]
            }

        tiled = params.tiled_diffusion
        if tiled is not None and tiled.enabled:
            scripts["Tiled Diffusion"] = {
                "args": [
                    "True",
                    tiled.method,
                    tiled.overwrite_size,
                    tiled.keep_input_size,
                    params.width,
                    params.height,
                    tiled.tile_width,
                    tiled.tile_height,
                    tiled.tile_overlap,
                    tiled.batch_size,
                    params.hires.upscaler,
                    params.hires.scale,
                ]
            }

        tiled_vae = params.tiled_vae
        if tiled_vae is not None and tiled_vae.enabled:
            scripts["Tiled VAE"] = {
                "args": [
                    "True",
                    tiled_vae.encoder_tile_size,
                    tiled_vae.decoder_tile_size,
                    tiled_vae.vae_to_gpu,
                    tiled_vae.fast_decoder,
                    tiled_vae.fast_encoder,
                    tiled_vae.color_fix,
                ]
            }

        return {
            "alwayson_scripts": scripts,
            "cfg_scale": params.cfg_scale,
            "denoising_strength": params.hires.denoising_strength,
            "enable_hr": self.mode is ReplayMode.UPSCALE,
            "height": params.height,
            "hr_scale": params.hires.scale,
            "hr_steps": params.hires.steps,
            "hr_upscaler": params.hires.upscaler,
            "negative_prompt": params.negative_prompt,
            "override_settings": {"CLIP_stop_at_last_layers": params.clip_skip or 1},
            "override_settings_restore_afterwards": True,
            "prompt": params.prompt,
            "restore_faces": params.face_restoration.enabled,
            "sampler_name": params.sampler,
            "save_images": False,
            "seed": params.seed,
            "send_images": True,
            "steps": params.steps,
            "subseed": params.subseed if params.subseed is not None else -1,
            "subseed_strength": params.subseed_strength or 0,
            "width": params.width,
        }

    # -- session state -------------------------------------------------------

    async def switch_model_if_needed(self, model_name: str, file_name: str) -> None:
        if model_name == self.state.model:
            return
        if model_name not in {model.name for model in self.models}:
            raise ModelNotFoundError(f"Model {model_name} does not exist. Skipping {file_name}.")

        logger.info("Setting active model to %s...", model_name)
        if not await self.client.set_active_model(model_name):
            raise GenerationError(f"Failed to set active model to {model_name}")
        self.state.model = model_name
        success(logger, "Active model updated.")

    async def switch_vae_if_needed(self, vae_hash: str | None) -> None:
        target = vae_hash or "None"
        if target == self.state.vae:
            return

        if target in SENTINEL_VAES:
            logger.info("Setting active VAE to %s...", target)
            vae_name, new_state = target, target
        else:
            vae = next((item for item in self.vaes if item.hash == target), None)
            if vae is None:
                logger.warning(
                    "VAE with hash %s does not exist. Setting active VAE to None...", target
                )
                vae_name, new_state = "None", "None"
                if self.state.vae == "None":
                    return
            else:
                logger.info("Setting active VAE to %s (%s)...", vae.file_name, vae.hash)
                vae_name, new_state = vae.file_name, vae.hash

        if not await self.client.set_active_vae(vae_name):
            raise GenerationError(f"Failed to set active VAE to {vae_name}")
        self.state.vae = new_state
        success(logger, "Active VAE updated.")

    # -- generation ----------------------------------------------------------

    async def restore_faces(self, image_base64: str, strength: float) -> str | None:
        """Run the configured face-restoration pass; ``None`` when it fails."""
        method = self.cfg.restore_faces_method
        if method not in FACE_RESTORE_METHODS:
            raise GenerationError(
                f"Unknown face restoration method {method!r}; "
                f"expected one of {', '.join(FACE_RESTORE_METHODS)}"
            )
        if method == "adetailer":
            res = await self.client.img2img(
                {
                    "init_images": [image_base64],
                    "denoising_strength": 0,
                    "alwayson_scripts": {
                        "ADetailer": {
                            "args": [
                                True,
                                False,
                                {
                                    "ad_model": ADETAILER_MODEL,
                                    "ad_denoising_strength": strength,
                                },
                            ]
                        }
                    },
                    "save_images": False,
                    "send_images": True,
                }
            )
            images = res.data.get("images") if res.success and isinstance(res.data, dict) else None
            image = images[0] if images else None
        else:
            key = "gfpgan_visibility" if method == "gfpgan" else "codeformer_visibility"
            res = await self.client.extra_single_image({key: strength, "image": image_base64})
            image = res.data.get("image") if res.success and isinstance(res.data, dict) else None

        if not image:
            logger.warning("Failed to restore faces: %s", res.error or "no image returned")
            return None
        return image

    async def txt2img(self, request: dict[str, Any], params: GenerationParameters) -> GeneratedImage:
        async with ProgressMonitor(
            self.client.get_progress,
            interval=self.cfg.progress_interval,
            desc="Upscaling" if self.mode is ReplayMode.UPSCALE else "Reproducing",
        ):
            res = await self.client.txt2img({**request, "restore_faces": False})

        if not res.success:
            raise GenerationError(res.error)
        if not isinstance(res.data, dict) or not res.data.get("images"):
            raise GenerationError("txt2img response contained no images")

        image_base64 = res.data["images"][0]
        if params.face_restoration.enabled:
            restored = await self.restore_faces(image_base64, params.face_restoration.strength)
            if restored is not None:
                image_base64 = restored

        info = res.data.get("info") or "{}"
        infotexts = (json.loads(info) if isinstance(info, str) else info).get("infotexts") or [""]
        text = infotexts[0]
        if params.template:
            text += f"\nTemplate: {params.template}"
        if params.negative_template:
            text += f"\nNegative Template: {params.negative_template}"

        image = encode_for_ext(decode_base64_image(image_base64), self.cfg.image_ext)
        return GeneratedImage(image=image, params=text)

    def _source_paths(self, file_name: str) -> tuple[Path, Path]:
        return (
            find_with_ext(self.root, file_name, self.cfg.image_ext),
            find_with_ext(self.root, file_name, self.cfg.params_ext),
        )

    async def reproduce(
        self, request: dict[str, Any], params: GenerationParameters
    ) -> ReplayOutcome:
        image_path, params_path = self._source_paths(params.file_name)
        generated = await self.txt2img(request, params)

        diff = await asyncio.to_thread(compare_images, image_path, generated.image)
        reproducible = is_reproducible(diff.percent_diff, self.cfg.reproduce_tolerance)
        logger.log(
            SUCCESS if reproducible else logging.WARNING,
            "Pixel Diff: %d. Percent diff: %.2f%%.",
            diff.pixel_diff,
            diff.percent_diff * 100,
        )

        dir_names = self.cfg.dir_names
        parent_dir = image_path.parent / (
            dir_names.reproducible if reproducible else dir_names.non_reproducible
        )
        products_dir = parent_dir / dir_names.products
        output_path = write_file(products_dir / image_path.name, generated.image)
        write_file(products_dir / params_path.name, generated.params)
        for src in (image_path, params_path):
            move_file(src, parent_dir)

        logger.info("%s moved to %s.", params.file_name, parent_dir)
        return ReplayOutcome(
            file_name=params.file_name,
            success=True,
            output_path=str(output_path),
            pixel_diff=diff.pixel_diff,
            percent_diff=diff.percent_diff,
            reproducible=reproducible,
        )

    async def upscale(self, request: dict[str, Any], params: GenerationParameters) -> ReplayOutcome:
        image_path, params_path = self._source_paths(params.file_name)
        rel_dir = Path(params.file_name).parent
        output_dir = self.root / self.cfg.dir_names.upscaled / rel_dir
        sources_dir = self.root / self.cfg.dir_names.upscale_completed / rel_dir

        generated = await self.txt2img(request, params)
        output_path = write_file(output_dir / image_path.name, generated.image)
        write_file(output_dir / params_path.name, generated.params)
        for src in (image_path, params_path):
            move_file(src, sources_dir)

        return ReplayOutcome(file_name=params.file_name, success=True, output_path=str(output_path))

    async def _replay_item(
        self, params: GenerationParameters, image_file_names: set[str]
    ) -> ReplayOutcome:
        if params.file_name not in image_file_names:
            logger.warning("Image for %s does not exist. Skipping.", params.file_name)
            return ReplayOutcome(
                file_name=params.file_name, success=False, error="Image does not exist"
            )

        request = self.build_txt2img_request(params)
        logger.info(
            "%s %s with params:\n%s",
            "Upscaling" if self.mode is ReplayMode.UPSCALE else "Reproducing",
            params.file_name,
            json.dumps(request, indent=2, ensure_ascii=False),
        )

        await self.switch_model_if_needed(params.model, params.file_name)
        await self.switch_vae_if_needed(params.vae)

        if self.mode is ReplayMode.REPRODUCE:
            return await self.reproduce(request, params)
        return await self.upscale(request, params)

    async def run(
        self,
        params_list: list[GenerationParameters],
        image_file_names: list[str],
    ) -> ReplayReport:
        """Enqueue every item, wait for the last one and return the report."""
        started = time.perf_counter()
        report = ReplayReport(mode=self.mode.value, total=len(params_list))
        images = set(image_file_names)

        async def _item(params: GenerationParameters) -> None:
            item_started = time.perf_counter()
            try:
                outcome = await self._replay_item(params, images)
            except Exception as exc:
                logger.exception("Failed to process %s", params.file_name)
                outcome = ReplayOutcome(file_name=params.file_name, success=False, error=str(exc))
            report.outcomes.append(outcome)
            logger.info(
                "%d / %d completed in %s.\n%s",
                report.completed,
                report.total,
                format_elapsed(time.perf_counter() - item_started),
                SEPARATOR,
            )

        last: asyncio.Task[Any] | None = None
        for params in params_list:
            last = self.chain.add(lambda params=params: _item(params))
        if last is not None:
            # Cancelling the caller leaves the chain running until the exit hook
            # has interrupted the server and cancelled it.
            await asyncio.shield(last)

        report.elapsed = time.perf_counter() - started
        logger.info(
            "Completed: %d. Errors: %d. Total time: %s.",
            report.succeeded,
            report.failed,
            format_elapsed(report.elapsed),
        )
        return report


async def restore_faces_run(
    image_file_names: list[str],
    *,
    client: SDWebUIClient,
    cfg: Config,
    root: Path = Path("."),
    on_queue: Callable[[GenerationQueue], None] | None = None,
) -> ReplayReport:
    """Restore faces on existing images, writing results into ``Restored Faces``."""
    started = time.perf_counter()
    report = ReplayReport(mode="restore-faces", total=len(image_file_names))
    queue = GenerationQueue(client, cfg, mode=ReplayMode.REPRODUCE, models=[], vaes=[], root=root)
    if on_queue is not None:
        on_queue(queue)

    groups = build_override_tree(
        [
            find_with_ext(root, name, cfg.image_ext).relative_to(root)
            for name in image_file_names
        ],
        root=root,
        file_name=cfg.overrides_file_name,
    )

    async def _item(file_path: Path, overrides: dict[str, Any]) -> None:
        item_started = time.perf_counter()
        file_name = str(file_path.with_suffix(""))
        try:
            logger.info("Restoring faces for %s...", file_name)
            source = await asyncio.to_thread((root / file_path).read_bytes)
            strength = overrides.get("restoreFacesStrength", cfg.restore_faces_strength)
            restored = await queue.restore_faces(encode_base64_image(source), strength)
            if restored is None:
                raise GenerationError(f"Failed to restore faces for {file_name}")
            image = encode_for_ext(decode_base64_image(restored), cfg.image_ext)
            output_path = write_file(
                root / cfg.dir_names.restored_faces / file_path.name, image
            )
            outcome = ReplayOutcome(file_name=file_name, success=True, output_path=str(output_path))
        except Exception as exc:
            logger.exception("Failed to restore faces for %s", file_name)
            outcome = ReplayOutcome(file_name=file_name, success=False, error=str(exc))
        report.outcomes.append(outcome)
        logger.info(
            "%d / %d completed in %s.\n%s",
            report.completed,
            report.total,
            format_elapsed(time.perf_counter() - item_started),
            SEPARATOR,
        )

    last: asyncio.Task[Any] | None = None
    for group in groups:
        for file_path in group.file_paths:
            last = queue.chain.add(
                lambda file_path=file_path, overrides=group.overrides: _item(file_path, overrides)
            )
    if last is not None:
        await asyncio.shield(last)

    report.elapsed = time.perf_counter() - started
    logger.info(
        "Completed: %d. Errors: %d. Total time: %s.",
        report.succeeded,
        report.failed,
        format_elapsed(report.elapsed),
    )
    return report


def _active_vae_hash(active_vae: str | None, vaes: list[VAE]) -> str | None:
    if not active_vae:
        return None
    if active_vae in SENTINEL_VAES:
        return active_vae
    for vae in vaes:
        if vae.file_name == active_vae:
            return vae.hash
    return active_vae


async def generate_images(
    file_names: FileNames,
    *,
    mode: ReplayMode,
    client: SDWebUIClient,
    cfg: Config,
    root: Path = Path("."),
    on_queue: Callable[[GenerationQueue], None] | None = None,
) -> ReplayReport:
    """Replay every image/params pair in ``file_names`` in ``mode``."""
    await client.refresh_checkpoints()
    active_model, active_vae, all_params, models, vaes = await asyncio.gather(
        client.get_active_model(),
        client.get_active_vae(),
        parse_and_sort(file_names, client=client, cfg=cfg, root=root),
        client.list_models(),
        list_vaes(cfg.vae_dir),
    )

    state = SessionState(model=active_model, vae=_active_vae_hash(active_vae, vaes))
    queue = GenerationQueue(
        client,
        cfg,
        mode=mode,
        models=models or [],
        vaes=vaes,
        state=state,
        root=root,
    )
    if on_queue is not None:
        on_queue(queue)
    return await queue.run(all_params, file_names.image_file_names)
