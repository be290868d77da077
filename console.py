"""
Command line for replaying Stable Diffusion web UI generation parameters.

Commands:
- upscale / reproduce: replay every image + params pair in the folder
- restore-faces: run a face-restoration pass over existing images
- prune-params: move params files without a matching image aside
- segment-by-model / segment-by-upscaled: sort image + params pairs into folders
- prune-and-segment-upscaled: prune-params, then segment-by-upscaled
- active-model / active-vae / models / samplers / upscalers / vaes: inspect the server
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from app_context import AppContext, create_app_context
from config import Config
from core.file_ops import list_image_and_param_file_names, list_vaes, prune_params
from core.generation_queue import generate_images, restore_faces_run
from core.log_utils import setup_logging, success
from core.models import FileNames, ReplayMode
from core.segment import prune_and_segment_by_upscaled, segment_by_model, segment_by_upscaled

logger = logging.getLogger(__name__)


def _list_files(app: AppContext, *, recursive: bool = False) -> FileNames:
    return list_image_and_param_file_names(
        app.root,
        image_ext=app.cfg.image_ext,
        params_ext=app.cfg.params_ext,
        recursive=recursive,
        excluded_dirs=app.cfg.dir_names.excluded_from_listing(),
    )


def _print_list(title: str, items: list[str] | None) -> int:
    if items is None:
        logger.error("Unable to fetch %s.", title.lower())
        return 1
    print(f"{title} ({len(items)}):")
    for index, item in enumerate(items, start=1):
        print(f"  {index}. {item}")
    return 0


async def _replay(app: AppContext, args: argparse.Namespace) -> int:
    mode = ReplayMode(args.command)
    report = await generate_images(
        _list_files(app, recursive=args.recursive),
        mode=mode,
        client=app.client,
        cfg=app.cfg,
        root=app.root,
        on_queue=app.attach_queue,
    )
    success(logger, report.summary())
    return 0 if report.failed == 0 else 1


async def _restore_faces(app: AppContext, args: argparse.Namespace) -> int:
    report = await restore_faces_run(
        _list_files(app, recursive=args.recursive).image_file_names,
        client=app.client,
        cfg=app.cfg,
        root=app.root,
        on_queue=app.attach_queue,
    )
    success(logger, report.summary())
    return 0 if report.failed == 0 else 1


async def _prune_params(app: AppContext, args: argparse.Namespace) -> int:
    prune_params(
        _list_files(app, recursive=args.recursive),
        root=app.root,
        params_ext=app.cfg.params_ext,
        pruned_dir=app.cfg.dir_names.pruned_params,
    )
    return 0


async def _segment_by_model(app: AppContext, args: argparse.Namespace) -> int:
    await app.client.refresh_checkpoints()
    await segment_by_model(
        _list_files(app, recursive=args.recursive), client=app.client, cfg=app.cfg, root=app.root
    )
    return 0


async def _segment_by_upscaled(app: AppContext, args: argparse.Namespace) -> int:
    file_names = _list_files(app, recursive=args.recursive)
    await segment_by_upscaled(file_names.param_file_names, cfg=app.cfg, root=app.root)
    return 0


async def _prune_and_segment_upscaled(app: AppContext, args: argparse.Namespace) -> int:
    await prune_and_segment_by_upscaled(
        _list_files(app, recursive=args.recursive), cfg=app.cfg, root=app.root
    )
    return 0


async def _active_model(app: AppContext, args: argparse.Namespace) -> int:
    model = await app.client.get_active_model()
    if model is None:
        return 1
    print(f"Active model: {model}")
    return 0


async def _active_vae(app: AppContext, args: argparse.Namespace) -> int:
    vae = await app.client.get_active_vae()
    if vae is None:
        return 1
    print(f"Active VAE: {vae}")
    return 0


async def _models(app: AppContext, args: argparse.Namespace) -> int:
    models = await app.client.list_models()
    return _print_list(
        "Models", None if models is None else [f"{m.name} [{m.hash}]" for m in models]
    )


async def _samplers(app: AppContext, args: argparse.Namespace) -> int:
    return _print_list("Samplers", await app.client.list_samplers())


async def _upscalers(app: AppContext, args: argparse.Namespace) -> int:
    return _print_list("Upscalers", await app.client.list_upscalers())


async def _vaes(app: AppContext, args: argparse.Namespace) -> int:
    vaes = await list_vaes(app.cfg.vae_dir)
    return _print_list("VAEs", [f"{vae.file_name} [{vae.hash}]" for vae in vaes])


COMMANDS = {
    "upscale": _replay,
    "reproduce": _replay,
    "restore-faces": _restore_faces,
    "prune-params": _prune_params,
    "segment-by-model": _segment_by_model,
    "segment-by-upscaled": _segment_by_upscaled,
    "prune-and-segment-upscaled": _prune_and_segment_upscaled,
    "active-model": _active_model,
    "active-vae": _active_vae,
    "models": _models,
    "samplers": _samplers,
    "upscalers": _upscalers,
    "vaes": _vaes,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sdreplay",
        description="Replay Stable Diffusion web UI generation parameters.",
    )
    parser.add_argument("--root", default=".", help="folder holding images and params files")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    file_commands = {
        "upscale": "upscale every image with its params",
        "reproduce": "reproduce every image with its params",
        "restore-faces": "restore faces on existing images",
        "prune-params": "move params files without an image aside",
        "segment-by-model": "move image + params pairs into one folder per model",
        "segment-by-upscaled": "split image + params pairs by whether hires fix was used",
        "prune-and-segment-upscaled": "prune-params, then segment-by-upscaled",
    }
    for name, help_text in file_commands.items():
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--recursive", action="store_true", help="include subfolders")
    sub.add_parser("active-model", help="show the loaded checkpoint")
    sub.add_parser("active-vae", help="show the loaded VAE")
    sub.add_parser("models", help="list checkpoints")
    sub.add_parser("samplers", help="list samplers")
    sub.add_parser("upscalers", help="list upscalers")
    sub.add_parser("vaes", help="list local VAE files with their hashes")
    return parser


async def run(args: argparse.Namespace, cfg: Config) -> int:
    app = create_app_context(cfg, root=Path(args.root))
    try:
        return await COMMANDS[args.command](app, args)
    except (asyncio.CancelledError, KeyboardInterrupt):
        await app.interrupt_pending_work()
        raise
    finally:
        await app.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        cfg = Config.from_env()
        return asyncio.run(run(args, cfg))
    except KeyboardInterrupt:
        logger.warning("Interrupted.")
        return 130
    except Exception:
        logger.exception("Command %s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
