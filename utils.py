"""
Helpers shared by the CLI and the video processor: colour parsing, image
loading/saving and the store of named two-colour palettes.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

__all__ = [
    # Functions
    'load_palettes_from_file',
    'save_palettes_to_file',
    'hex_to_rgb',
    'rgb_to_hex',
    'parse_color',
    'load_pixel_buffer',
    'buffer_to_image',
    'upscale_nearest',
    'save_png',
    'validate_video_file',
    'validate_image_file',
    # Classes
    'PaletteManager',
]

logger = logging.getLogger('bitdither')

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}
VIDEO_EXTENSIONS = {'.mp4', '.avi', '.mov', '.mkv', '.wmv', '.flv', '.webm', '.m4v'}

DEFAULT_EXPORT_NAME = "dithered.png"

PALETTE_KEYS = {'name', 'foreground', 'background'}

RGBColor = Tuple[int, int, int]


def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Read user palettes.

    Args:
        filepath: JSON file holding a list of {name, foreground, background}

    Returns:
        The list, or [] when the file is missing or unreadable
    """
    if not os.path.isfile(filepath):
        return []
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read palettes from {filepath}: {e}")
        return []
    return data if isinstance(data, list) else []


def save_palettes_to_file(palettes: List[Dict], filepath: str = "palette.json"):
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(palettes, f, indent=4)
    except OSError as e:
        logger.error(f"Could not write palettes to {filepath}: {e}")


def hex_to_rgb(hex_color: str) -> RGBColor:
    """
    Parse "#rrggbb", "rrggbb" or the short "#rgb" form.

    Raises:
        ValueError: If the string is not a hex colour
    """
    digits = hex_color.strip().lstrip('#')
    if len(digits) == 3:
        digits = ''.join(c + c for c in digits)
    if len(digits) != 6:
        raise ValueError(f"Invalid hex colour: {hex_color!r}")
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def rgb_to_hex(rgb: Sequence[int]) -> str:
    """(r, g, b) -> "#rrggbb" in lower case."""
    r, g, b = (int(c) for c in rgb[:3])
    return f'#{r:02x}{g:02x}{b:02x}'


def parse_color(value: Union[str, Sequence[int]]) -> RGBColor:
    """Accept "#rrggbb" strings or [r, g, b] lists; channels are clamped to 0..255."""
    if isinstance(value, str):
        return hex_to_rgb(value)
    if len(value) != 3:
        raise ValueError(f"Colour must have 3 components, got {value!r}")
    return tuple(max(0, min(255, int(c))) for c in value)


def load_pixel_buffer(filepath: str) -> np.ndarray:
    """Decode any Pillow-readable file into an (H, W, 4) uint8 RGBA array."""
    with Image.open(filepath) as img:
        return np.array(img.convert('RGBA'), dtype=np.uint8)


def buffer_to_image(buffer: np.ndarray) -> Image.Image:
    return Image.fromarray(np.asarray(buffer, dtype=np.uint8), 'RGBA')


def upscale_nearest(image: Image.Image, multiplier: int) -> Image.Image:
    """
    Integer block upscale with no smoothing, so dithered pixels stay crisp.
    Multipliers below 1 are treated as 1 and return the image unchanged.
    """
    factor = max(1, int(multiplier))
    if factor == 1:
        return image
    return image.resize((image.width * factor, image.height * factor), Image.Resampling.NEAREST)


def save_png(image: Image.Image, filepath: Optional[str] = None) -> str:
    """
    Write 'image' losslessly. Missing parent directories are created.

    Returns:
        The path written ("dithered.png" in the working directory by default)
    """
    target = filepath or DEFAULT_EXPORT_NAME
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)
    image.save(target, format='PNG')
    return target


def _has_extension(filepath: str, extensions) -> bool:
    return os.path.splitext(filepath)[1].lower() in extensions


def validate_video_file(filepath: str) -> bool:
    """True for an existing file with a known video extension."""
    return _has_extension(filepath, VIDEO_EXTENSIONS) and os.path.exists(filepath)


def validate_image_file(filepath: str) -> bool:
    """True for an existing file with a known image extension."""
    return _has_extension(filepath, IMAGE_EXTENSIONS) and os.path.exists(filepath)


class PaletteManager:
    """
    Named foreground/background pairs for palette mode.

    Built-in pairs are always available. User pairs are stored in a JSON
    file and take precedence over a built-in with the same name.
    """

    BUILTIN_PALETTES = [
        {'name': 'Paper', 'foreground': '#f4ecd8', 'background': '#1b1b1b'},
        {'name': 'Game Boy', 'foreground': '#9bbc0f', 'background': '#0f380f'},
        {'name': 'Amber', 'foreground': '#ffb040', 'background': '#180c00'},
        {'name': 'Blueprint', 'foreground': '#e8f1ff', 'background': '#123a8c'},
    ]

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes: List[Dict] = []
        self.load()

    def load(self):
        self.palettes = [
            entry for entry in load_palettes_from_file(self.filepath)
            if isinstance(entry, dict) and PALETTE_KEYS <= set(entry)
        ]

    def save(self):
        save_palettes_to_file(self.palettes, self.filepath)

    def add_palette(self, name: str, foreground: str, background: str):
        """
        Store a user pair, replacing one with the same name.

        Raises:
            ValueError: If either colour is not valid hex
        """
        hex_to_rgb(foreground)
        hex_to_rgb(background)
        entry = {'name': name, 'foreground': foreground, 'background': background}
        existing = next((i for i, p in enumerate(self.palettes) if p['name'] == name), None)
        if existing is None:
            self.palettes.append(entry)
        else:
            self.palettes[existing] = entry
        self.save()

    def remove_palette(self, name: str):
        self.palettes = [p for p in self.palettes if p['name'] != name]
        self.save()

    def get_palette(self, name: str) -> Optional[Dict]:
        return next((p for p in self.palettes + self.BUILTIN_PALETTES if p['name'] == name), None)

    def get_palette_colors_rgb(self, name: str) -> Optional[Tuple[RGBColor, RGBColor]]:
        """(foreground, background) as RGB tuples, or None for an unknown name."""
        entry = self.get_palette(name)
        if entry is None:
            return None
        return hex_to_rgb(entry['foreground']), hex_to_rgb(entry['background'])

    def list_palette_names(self) -> List[str]:
        """User palettes first, then built-ins not shadowed by them."""
        names = [p['name'] for p in self.palettes]
        return names + [p['name'] for p in self.BUILTIN_PALETTES if p['name'] not in names]
