from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

SENTINEL_VAES = ("None", "Automatic")


class ReplayMode(str, Enum):
    REPRODUCE = "reproduce"
    UPSCALE = "upscale"


@dataclass
class HiresSettings:
    scale: float = 2.0
    denoising_strength: float = 0.3
    steps: int | None = None
    upscaler: str = "ESRGAN_4x"


@dataclass
class FaceRestoration:
    enabled: bool = False
    strength: float = 0.5


@dataclass
class CutoffSettings:
    """Prompt-segmentation ("Cutoff") extension settings."""

    enabled: bool = False
    targets: list[str] = field(default_factory=list)
    weight: float | None = None
    padding: str | None = None
    disable_for_neg: bool = False
    strong: bool = False
    interpolation: str | None = None


@dataclass
class TiledDiffusionSettings:
    enabled: bool = True
    method: str = "MultiDiffusion"
    overwrite_size: str = "False"
    keep_input_size: str = "True"
    tile_width: int = 96
    tile_height: int = 96
    tile_overlap: int = 48
    batch_size: int = 4


@dataclass
class TiledVAESettings:
    enabled: bool = True
    encoder_tile_size: int = 1024
    decoder_tile_size: int = 96
    vae_to_gpu: str = "True"
    fast_decoder: str = "True"
    fast_encoder: str = "True"
    color_fix: str = "False"


@dataclass
class GenerationParameters:
    """Fully resolved parameters for one sidecar file."""

    file_name: str
    prompt: str = ""
    negative_prompt: str = ""
    sampler: str = "Euler a"
    steps: int = 20
    cfg_scale: float = 7.0
    seed: int = -1
    subseed: int | None = None
    subseed_strength: float | None = None
    clip_skip: int | None = None
    width: int = 512
    height: int = 512
    vae: str | None = None
    model: str = ""
    model_hash: str | None = None
    hires: HiresSettings = field(default_factory=HiresSettings)
    face_restoration: FaceRestoration = field(default_factory=FaceRestoration)
    cutoff: CutoffSettings | None = None
    tiled_diffusion: TiledDiffusionSettings | None = None
    tiled_vae: TiledVAESettings | None = None
    template: str | None = None
    negative_template: str | None = None
    raw_params: str = ""


@dataclass(frozen=True)
class Model:
    hash: str
    name: str
    path: str


@dataclass(frozen=True)
class VAE:
    file_name: str
    hash: str


@dataclass
class FileNames:
    """Base names (no extension) of the images and sidecars found in a folder."""

    image_file_names: list[str] = field(default_factory=list)
    param_file_names: list[str] = field(default_factory=list)


@dataclass
class SessionState:
    """Local mirror of the remote service's loaded model and VAE."""

    model: str | None = None
    vae: str | None = None


@dataclass
class ReplayOutcome:
    file_name: str
    success: bool
    output_path: str | None = None
    error: str = ""
    pixel_diff: int | None = None
    percent_diff: float | None = None
    reproducible: bool | None = None


@dataclass
class ReplayReport:
    mode: str
    total: int
    outcomes: list[ReplayOutcome] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def completed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return self.completed - self.succeeded

    def summary(self) -> str:
        return (
            f"{self.completed}/{self.total} completed. "
            f"Succeeded: {self.succeeded}. Errors: {self.failed}."
        )
