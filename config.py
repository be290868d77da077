import json
import os
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_json(name: str, default: Any = None) -> Any:
    raw = _env(name, "").strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} is not valid JSON: {exc}") from exc


def _strip_trailing_slash(url: str) -> str:
    return url.rstrip("/")


@dataclass
class DirNames:
    """Folder names the replay and pruning operations write into."""

    non_reproducible: str = "Non-Reproducible"
    non_upscaled: str = "Non-Upscaled"
    products: str = "Products"
    pruned_params: str = "Pruned Params"
    reproducible: str = "Reproducible"
    restored_faces: str = "Restored Faces"
    upscale_completed: str = "Upscale Completed"
    upscaled: str = "Upscaled"

    @classmethod
    def from_mapping(cls, raw: Any) -> "DirNames":
        names = cls()
        if not isinstance(raw, dict):
            return names
        for key, value in raw.items():
            if hasattr(names, key) and isinstance(value, str) and value.strip():
                setattr(names, key, value.strip())
        return names

    def excluded_from_listing(self) -> list[str]:
        """Output folders skipped when scanning for image/params pairs."""
        keep = {self.non_upscaled, self.reproducible}
        return [name for name in vars(self).values() if name not in keep]


@dataclass
class Config:
    sdapi_url: str = "http://127.0.0.1:7860/sdapi/v1"
    overrides_file_name: str = "txt2img-overrides.json"

    # Replay
    reproduce_tolerance: float = 0.15
    progress_interval: float = 0.5

    # Default hires-fix parameters (not recorded in sidecars)
    hires_denoising_strength: float = 0.3
    hires_scale: float = 2.0
    hires_upscaler: str = "ESRGAN_4x"

    # Face restoration post-pass
    restore_faces_strength: float = 0.5
    restore_faces_method: str = "codeformer"

    # Paths & file layout
    vae_dir: str = ""
    image_ext: str = "jpg"
    params_ext: str = "txt"
    dir_names: DirNames = field(default_factory=DirNames)

    # Extension defaults, applied to every replayed image when set
    tiled_diffusion: dict[str, Any] | None = None
    tiled_vae: dict[str, Any] | None = None

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            sdapi_url=_strip_trailing_slash(
                _env("SDAPI_URL", "http://127.0.0.1:7860/sdapi/v1")
            ),
            overrides_file_name=_env("OVERRIDES_FILE_NAME", "txt2img-overrides.json"),
            reproduce_tolerance=_env_float("REPROD_DIFF_TOLERANCE", 0.15),
            progress_interval=_env_float("PROGRESS_INTERVAL", 0.5),
            hires_denoising_strength=_env_float("DEFAULT_HIRES_DENOISING_STRENGTH", 0.3),
            hires_scale=_env_float("DEFAULT_HIRES_SCALE", 2.0),
            hires_upscaler=_env("DEFAULT_HIRES_UPSCALER", "ESRGAN_4x"),
            restore_faces_strength=_env_float("DEFAULT_RESTORE_FACES_STRENGTH", 0.5),
            restore_faces_method=_env("RESTORE_FACES_METHOD", "codeformer").strip().lower(),
            vae_dir=_env("VAE_DIR", ""),
            image_ext=_env("IMAGE_EXT", "jpg").lstrip("."),
            params_ext=_env("PARAMS_EXT", "txt").lstrip("."),
            dir_names=DirNames.from_mapping(_env_json("DIR_NAMES", {})),
            tiled_diffusion=_env_json("TILED_DIFFUSION"),
            tiled_vae=_env_json("TILED_VAE"),
        )
