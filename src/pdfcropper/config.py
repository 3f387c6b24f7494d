from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple


@dataclass
class Settings:
    output_dir: Path = Path("output")
    scale: float = 2.0
    preview_scale: float = 1.0
    transparent: bool = False
    min_crop_dimension: float = 2.0
    engine_modules: Tuple[str, ...] = field(default=("pymupdf", "fitz"))
    png_compress_level: int = 6

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if self.preview_scale <= 0:
            raise ValueError(f"preview_scale must be positive, got {self.preview_scale}")
        if self.min_crop_dimension < 0:
            raise ValueError(f"min_crop_dimension must not be negative, got {self.min_crop_dimension}")
        if not 0 <= self.png_compress_level <= 9:
            raise ValueError(f"png_compress_level must be within 0..9, got {self.png_compress_level}")
        if not self.engine_modules:
            raise ValueError("engine_modules must name at least one module")
        self.output_dir = Path(self.output_dir)
        self.engine_modules = tuple(self.engine_modules)
