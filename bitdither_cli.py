#!/usr/bin/env python3
"""
Bitdither command-line interface.

Runs JSON job files that turn an image, a folder of images or a video into
1-bit style bitmaps. Terminal output goes through Rich.
"""

import sys
import json
import logging
import argparse
from pathlib import Path
from typing import Optional, Dict, Any, List

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

from bitdither_lib import DitherMethod, ColorMode, DitherSettings, BitmapDitherer
from video_processor import VideoProcessor
from utils import (
    PaletteManager, parse_color, rgb_to_hex, load_pixel_buffer, buffer_to_image,
    upscale_nearest, save_png, validate_image_file, validate_video_file,
    IMAGE_EXTENSIONS, DEFAULT_EXPORT_NAME,
)
from config_manager import ConfigManager


console = Console()

logger = logging.getLogger('bitdither')

DEFAULT_PREFERENCES = "bitdither_config.json"


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Route log records to the Rich console and, optionally, to a plain-text file.

    Args:
        verbose: DEBUG level (per-run pipeline timings)
        quiet: ERROR level only; wins over verbose
        log_file: Append a timestamped copy of every record here
    """
    level = logging.ERROR if quiet else logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [
        RichHandler(console=console, show_time=True, show_path=False,
                    markup=True, rich_tracebacks=True)
    ]
    if log_file:
        to_file = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        to_file.setFormatter(logging.Formatter('%(asctime)s %(name)s [%(levelname)s] %(message)s'))
        handlers.append(to_file)

    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]",
                        handlers=handlers, force=True)
    logger.setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Rich progress bar usable as a context manager.
    `update` matches VideoProcessor's progress_callback signature.
    """

    def __init__(self, description: str = "Working..."):
        self.description = description
        self.progress: Optional[Progress] = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.start()
        self.task = self.progress.add_task(self.description, total=100)
        return self

    def __exit__(self, *exc_info):
        if self.progress is not None:
            self.progress.stop()

    def update(self, fraction: float, message: str):
        if self.progress is not None:
            self.progress.update(self.task, completed=fraction * 100, description=message)

    def finish(self):
        self.update(1.0, "Done")


# ==================== Job validation ====================

VALID_MODES = ["image", "video", "folder"]
VALID_METHODS = [m.value for m in DitherMethod]
VALID_COLOR_MODES = [m.value for m in ColorMode]

TONE_FIELDS = ["brightness", "contrast", "gamma", "threshold_offset", "black_point", "white_point"]
DITHER_NUMERIC_FIELDS = ["dither_strength", "glitch_intensity"]
DITHER_FIELDS = ["method", "color_mode", "seed", "preserve_alpha"] + DITHER_NUMERIC_FIELDS
RESIZE_FIELDS = ["enabled", "multiplier"]


class ConfigValidationError(Exception):
    """The job file cannot be run as written."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_unknown(section: str, data: Dict[str, Any], known: List[str], errors: List[str]):
    errors.extend(f"Unknown {section} field '{key}' (choose from {known})"
                  for key in data if key not in known)


def _check_dithering(dith: Dict[str, Any], errors: List[str]):
    _check_unknown("dithering", dith, DITHER_FIELDS, errors)
    if "method" in dith and dith["method"] not in VALID_METHODS:
        errors.append(f"Unknown dithering.method '{dith['method']}' (choose from {VALID_METHODS})")
    if "color_mode" in dith and dith["color_mode"] not in VALID_COLOR_MODES:
        errors.append(f"Unknown dithering.color_mode '{dith['color_mode']}' (choose from {VALID_COLOR_MODES})")
    errors.extend(f"'dithering.{key}' must be a number"
                  for key in DITHER_NUMERIC_FIELDS if key in dith and not _is_number(dith[key]))
    seed = dith.get("seed")
    if seed is not None and (not isinstance(seed, int) or isinstance(seed, bool) or seed < 0):
        errors.append("'dithering.seed' must be a non-negative integer or null")
    if "preserve_alpha" in dith and not isinstance(dith["preserve_alpha"], bool):
        errors.append("'dithering.preserve_alpha' must be true or false")


def _check_tone(tone: Dict[str, Any], errors: List[str]):
    _check_unknown("tone", tone, TONE_FIELDS, errors)
    errors.extend(f"'tone.{key}' must be a number"
                  for key, value in tone.items() if key in TONE_FIELDS and not _is_number(value))


def _check_palette(pal: Dict[str, Any], errors: List[str]):
    for key in ("foreground", "background"):
        if key not in pal:
            continue
        try:
            parse_color(pal[key])
        except (ValueError, TypeError):
            errors.append(f"'palette.{key}' is not a colour: {pal[key]!r}")
    name = pal.get("name")
    if name is not None and PaletteManager().get_palette(name) is None:
        errors.append(f"Unknown palette '{name}'")


def _check_final_resize(resize: Dict[str, Any], errors: List[str]):
    _check_unknown("final_resize", resize, RESIZE_FIELDS, errors)
    if "enabled" in resize and not isinstance(resize["enabled"], bool):
        errors.append("'final_resize.enabled' must be true or false")
    if "multiplier" not in resize:
        return
    multiplier = resize["multiplier"]
    if not isinstance(multiplier, int) or isinstance(multiplier, bool):
        errors.append("'final_resize.multiplier' must be an integer")
    elif multiplier <= 0:
        errors.append("'final_resize.multiplier' must be positive")


SECTION_CHECKS = {
    "dithering": _check_dithering,
    "tone": _check_tone,
    "palette": _check_palette,
    "final_resize": _check_final_resize,
}


def validate_config(config: Dict[str, Any], config_path: Path, check_input: bool = True) -> Dict[str, Any]:
    """
    Check a job and fill in defaults. Every problem is reported at once.

    Args:
        config: Parsed job JSON
        config_path: The job file; relative input/output paths resolve against its directory
        check_input: Require the input path to exist

    Returns:
        The same dict, normalized

    Raises:
        ConfigValidationError: Listing every problem found
    """
    if not isinstance(config, dict):
        raise ConfigValidationError("The job file must contain a JSON object")

    errors: List[str] = [f"Missing required field: '{key}'"
                         for key in ("input", "output") if key not in config]

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Unknown mode '{mode}' (choose from {VALID_MODES})")

    if config.get("preset") is not None and not isinstance(config["preset"], str):
        errors.append("'preset' must be a string")

    for section, check in SECTION_CHECKS.items():
        if section not in config:
            continue
        if isinstance(config[section], dict):
            check(config[section], errors)
        else:
            errors.append(f"'{section}' must be an object")

    scale = config.get("scale", {})
    if not isinstance(scale, dict):
        errors.append("'scale' must be an object")
    elif "scale_percent" in scale and not _is_number(scale["scale_percent"]):
        errors.append("'scale.scale_percent' must be a number")

    if errors:
        raise ConfigValidationError("Invalid job file:\n" + "\n".join(f"  • {e}" for e in errors))

    base_dir = config_path.parent
    for key in ("input", "output"):
        path = Path(config[key])
        config[key] = str(path if path.is_absolute() else (base_dir / path).resolve())

    if check_input and not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input not found: {config['input']}")

    for key in ("mode", "preset"):
        config.setdefault(key, None)
    for key in ("dithering", "tone", "scale", "palette"):
        config.setdefault(key, {})
    # None until the export preferences fill it in
    resize = config.setdefault("final_resize", None)
    if resize is not None:
        resize.setdefault("enabled", False)
        resize.setdefault("multiplier", 2)
    return config


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Read and validate a job file.

    Raises:
        ConfigValidationError: Unreadable file, bad JSON or invalid job
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Bad JSON in {config_path.name}, line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Cannot read {config_path}: {e}")
    return validate_config(config, config_path)


def detect_mode(input_path: Path) -> str:
    """Pick "folder", "video" or "image" for an existing input path."""
    if input_path.is_dir():
        return "folder"
    if validate_video_file(str(input_path)):
        return "video"
    if validate_image_file(str(input_path)):
        return "image"
    if not input_path.exists():
        raise ConfigValidationError(f"Input not found: {input_path}")
    raise ConfigValidationError(f"Cannot tell what to do with a '{input_path.suffix.lower()}' file; set \"mode\"")


# ==================== Settings ====================

def settings_from_config(config: Dict[str, Any], config_manager: Optional[ConfigManager] = None) -> DitherSettings:
    """
    Build the pipeline settings snapshot for a job.
    The stored defaults (or the built-ins without preferences) are the base,
    a named preset is laid over them and explicit job fields override both.

    Raises:
        ConfigValidationError: If the preset or palette cannot be resolved
    """
    base = (config_manager.default_settings() if config_manager is not None else DitherSettings()).to_dict()

    preset = config.get("preset")
    if preset:
        manager = config_manager or ConfigManager()
        preset_data = manager.get_preset_dict(preset)
        if preset_data is None:
            raise ConfigValidationError(f"Preset not found: {preset}")
        for section in ("tone", "quantization", "scale"):
            base[section].update(preset_data.get(section, {}))
        base["seed"] = preset_data.get("seed", base["seed"])

    dith = config.get("dithering", {})
    quant = base["quantization"]
    if "method" in dith:
        quant["method"] = dith["method"]
    if "color_mode" in dith:
        quant["mode"] = dith["color_mode"]
    for key in DITHER_NUMERIC_FIELDS + ["preserve_alpha"]:
        if key in dith:
            quant[key] = dith[key]
    if "seed" in dith:
        base["seed"] = dith["seed"]

    base["tone"].update(config.get("tone", {}))
    base["scale"].update(config.get("scale", {}))

    pal = config.get("palette", {})
    if pal.get("name"):
        colors = PaletteManager().get_palette_colors_rgb(pal["name"])
        if colors is None:
            raise ConfigValidationError(f"Unknown palette '{pal['name']}'")
        quant["palette_foreground"], quant["palette_background"] = colors
    if "foreground" in pal:
        quant["palette_foreground"] = parse_color(pal["foreground"])
    if "background" in pal:
        quant["palette_background"] = parse_color(pal["background"])

    try:
        return DitherSettings.from_dict(base)
    except ValueError as e:
        raise ConfigValidationError(str(e))


def apply_export_preferences(config: Dict[str, Any], config_manager: Optional[ConfigManager] = None):
    """
    Fill what the job leaves open from the "export" preferences: the output
    name used when "output" is a directory, and the upscale when the job has
    no "final_resize" section.
    """
    export = config_manager.get("export", default={}) if config_manager is not None else {}
    if not isinstance(export, dict):
        export = {}
    config["export_filename"] = export.get("filename") or DEFAULT_EXPORT_NAME
    if config.get("final_resize") is not None:
        return

    multiplier = export.get("upscale_multiplier", 1)
    if not isinstance(multiplier, int) or isinstance(multiplier, bool) or multiplier < 1:
        logger.warning(f"Ignoring export.upscale_multiplier {multiplier!r} in preferences")
        multiplier = 1
    config["final_resize"] = {"enabled": multiplier > 1, "multiplier": multiplier}


def describe_settings(settings: DitherSettings):
    q = settings.quantization
    t = settings.tone
    logger.info(f"Method: [yellow]{q.method.value}[/]  Mode: [yellow]{q.mode.value}[/]  "
                f"Scale: [yellow]{settings.scale.scale_percent}%[/]")
    logger.info(f"Strength: {q.dither_strength}  Glitch: {q.glitch_intensity}  Seed: {settings.seed}")
    logger.info(f"Tone: brightness={t.brightness} contrast={t.contrast} gamma={t.gamma} "
                f"offset={t.threshold_offset} levels={t.black_point}..{t.white_point}")
    if q.mode == ColorMode.PALETTE:
        logger.info(f"Palette: {rgb_to_hex(q.palette_foreground)} on {rgb_to_hex(q.palette_background)}")


# ==================== Images ====================

def _png_path(output_path: Path) -> Path:
    if output_path.suffix.lower() == ".png":
        return output_path
    logger.warning(f"Output {output_path.name} is not a PNG; writing PNG instead")
    return output_path.with_suffix(".png")


def dither_image_file(input_path: Path, output_path: Path, ditherer: BitmapDitherer,
                      multiplier: Optional[int] = None) -> Path:
    """
    Dither one image file and write it as PNG.

    Returns:
        The path actually written
    """
    buffer = load_pixel_buffer(str(input_path))
    logger.debug(f"{input_path.name}: {buffer.shape[1]}x{buffer.shape[0]}")

    image = buffer_to_image(ditherer.process(buffer))
    if multiplier:
        image = upscale_nearest(image, multiplier)
    logger.debug(f"{input_path.name}: wrote {image.size[0]}x{image.size[1]}")

    return Path(save_png(image, str(_png_path(output_path))))


def _resize_multiplier(config: Dict[str, Any]) -> Optional[int]:
    resize = config.get("final_resize")
    return int(resize["multiplier"]) if resize and resize["enabled"] else None


def process_single_image(config: Dict[str, Any], settings: DitherSettings) -> bool:
    """An output directory receives the export filename. Returns False on any I/O or decode error."""
    source = Path(config["input"])
    target = Path(config["output"])
    if target.is_dir():
        target = target / config.get("export_filename", DEFAULT_EXPORT_NAME)

    logger.info(f"Dithering [cyan]{source.name}[/]")
    try:
        written = dither_image_file(source, target, BitmapDitherer(settings), _resize_multiplier(config))
    except (OSError, ValueError) as e:
        logger.error(f"Could not dither {source.name}: {e}", exc_info=True)
        return False

    logger.info(f"[bold green]✓ Saved {written}[/] ({written.stat().st_size / 1024:.1f} KB)")
    return True


def collect_folder_images(folder: Path) -> List[Path]:
    """Image files directly inside 'folder', sorted by name."""
    return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)


def process_folder(config: Dict[str, Any], settings: DitherSettings) -> bool:
    """
    Dither every image in the input folder to <output>/<stem>_dithered.png.
    One bad file does not stop the batch.

    Returns:
        True only if every image was written
    """
    source_dir = Path(config["input"])
    target_dir = Path(config["output"])
    images = collect_folder_images(source_dir)
    if not images:
        logger.error(f"No supported images in {source_dir}")
        return False

    target_dir.mkdir(parents=True, exist_ok=True)
    ditherer = BitmapDitherer(settings)
    multiplier = _resize_multiplier(config)
    failed = []

    with CLIProgressCallback("Dithering folder...") as progress:
        for done, image_path in enumerate(images, start=1):
            try:
                dither_image_file(image_path, target_dir / f"{image_path.stem}_dithered.png",
                                  ditherer, multiplier)
            except (OSError, ValueError) as e:
                failed.append(image_path.name)
                logger.error(f"Could not dither {image_path.name}: {e}")
            progress.update(done / len(images), f"{done}/{len(images)} images")
        progress.finish()

    logger.info(f"{len(images) - len(failed)}/{len(images)} images written to [cyan]{target_dir}[/]")
    return not failed


# ==================== Video ====================

def process_single_video(config: Dict[str, Any], settings: DitherSettings) -> bool:
    """Every frame is dithered independently; audio is copied through."""
    source = Path(config["input"])
    target = Path(config["output"])

    info = VideoProcessor().get_video_info(str(source))
    logger.info(f"Video [cyan]{source.name}[/]: {info['width']}x{info['height']}, "
                f"{info['fps']:.2f} fps, {info['frame_count']} frames")

    target.parent.mkdir(parents=True, exist_ok=True)
    progress = CLIProgressCallback("Dithering video...")
    processor = VideoProcessor(progress_callback=progress.update)
    with progress:
        ok = processor.process_video_streaming(str(source), str(target), BitmapDitherer(settings),
                                               final_resize_multiplier=_resize_multiplier(config))

    if ok:
        logger.info(f"[bold green]✓ Saved {target}[/] ({target.stat().st_size / (1024 * 1024):.1f} MB)")
    return ok


# ==================== Help & examples ====================

BANNER = """
[bold cyan]┌───────────────────────────────────────┐[/]
[bold cyan]│[/]   [bold white]Bitdither[/] [dim]v1.0[/]  1-bit image & video   [bold cyan]│[/]
[bold cyan]└───────────────────────────────────────┘[/]
"""

USAGE = """
[bold cyan]Usage[/]
  bitdither <job.json>                    Run a job file
  bitdither <job.json> --save-preset NAME Run it and store its settings as a preset
  bitdither <job.json> --save-defaults    Run it and make its settings the defaults
  bitdither --example-config              Print an annotated job file
  bitdither --list-presets                List stored presets
  bitdither --recent                      List recently dithered inputs
  bitdither --help                        Show this text

[bold]Flags[/]
  -v, --verbose        Debug output (pipeline timings)
  -q, --quiet          Errors only
  --log-file FILE      Also append the log to FILE
  --preferences FILE   Defaults, export options, presets and recent inputs
                       (default: bitdither_config.json)
"""


def show_banner():
    console.print(BANNER)


def show_help():
    console.print(USAGE)
    sections = [
        ("Dithering methods", [m.value for m in DitherMethod]),
        ("Colour modes", [m.value for m in ColorMode]),
        ("Named palettes", PaletteManager().list_palette_names()),
    ]
    for title, names in sections:
        console.print(f"  [bold]{title}:[/]")
        for name in names:
            console.print(f"    • [cyan]{name}[/]")
    console.print()


def example_config() -> Dict[str, Any]:
    defaults = DitherSettings()
    quant = defaults.quantization
    return {
        "_comment": "Bitdither job file; relative paths resolve against this file",
        "input": "path/to/input.png",
        "output": "path/to/dithered.png",
        "mode": "image",
        "preset": None,
        "dithering": {
            "method": quant.method.value,
            "color_mode": quant.mode.value,
            "dither_strength": quant.dither_strength,
            "glitch_intensity": quant.glitch_intensity,
            "seed": None,
            "preserve_alpha": quant.preserve_alpha
        },
        "tone": defaults.to_dict()["tone"],
        "scale": {"scale_percent": defaults.scale.scale_percent},
        "palette": {
            "_comment_name": "Add \"name\" for a stored palette; explicit colours override it",
            "foreground": rgb_to_hex(quant.palette_foreground),
            "background": rgb_to_hex(quant.palette_background)
        },
        "final_resize": {
            "enabled": False,
            "multiplier": 4
        }
    }


def generate_example_config():
    console.print(Panel(json.dumps(example_config(), indent=4), title="job.json", border_style="cyan"))
    console.print("[dim]Save as a .json file and edit to taste.[/]\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bitdither", add_help=False,
                                     description="1-bit image and video dithering")
    parser.add_argument('config', nargs='?', help='JSON job file')
    parser.add_argument('--help', '-h', action='store_true')
    parser.add_argument('--example-config', action='store_true')
    parser.add_argument('--list-presets', action='store_true')
    parser.add_argument('--save-preset', metavar='NAME')
    parser.add_argument('--save-defaults', action='store_true')
    parser.add_argument('--recent', action='store_true')
    parser.add_argument('--preferences', default=DEFAULT_PREFERENCES)
    parser.add_argument('--verbose', '-v', action='store_true')
    parser.add_argument('--quiet', '-q', action='store_true')
    parser.add_argument('--log-file')
    return parser


def _list_presets(preferences: str) -> int:
    names = ConfigManager(preferences).list_presets()
    if not names:
        console.print("[dim]No presets saved.[/]")
    for name in names:
        console.print(f"  • [cyan]{name}[/]")
    return 0


def _list_recent(preferences: str) -> int:
    recent = ConfigManager(preferences).get_recent_files() if Path(preferences).exists() else []
    if not recent:
        console.print("[dim]No recent inputs.[/]")
    for filepath in recent:
        console.print(f"  • [cyan]{filepath}[/]", soft_wrap=True)
    return 0


PROCESSORS = {
    "image": process_single_image,
    "video": process_single_video,
    "folder": process_folder,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI; returns the process exit status."""
    args = build_parser().parse_args(argv)

    if args.help or args.example_config:
        show_banner()
        if args.help:
            show_help()
        else:
            generate_example_config()
        return 0

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if args.list_presets:
        return _list_presets(args.preferences)
    if args.recent:
        return _list_recent(args.preferences)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] no job file given. Try [cyan]bitdither --help[/].")
        return 1

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Job file not found: {config_path}")
        return 1

    # a missing preferences file is only created when the job needs one
    config_manager = None
    try:
        config = load_config(config_path)
        if (Path(args.preferences).exists() or config.get("preset")
                or args.save_preset or args.save_defaults):
            config_manager = ConfigManager(args.preferences)
        settings = settings_from_config(config, config_manager)
        apply_export_preferences(config, config_manager)
        config["mode"] = config["mode"] or detect_mode(Path(config["input"]))
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        return 1

    logger.info(f"{config['mode'].capitalize()}: [cyan]{config['input']}[/] -> [cyan]{config['output']}[/]")
    describe_settings(settings)

    if args.save_preset:
        config_manager.save_preset(args.save_preset, settings)
        logger.info(f"Saved preset [cyan]{args.save_preset}[/]")
    if args.save_defaults:
        config_manager.save_defaults(settings)
        logger.info("Saved these settings as the defaults")
    if args.save_preset or args.save_defaults:
        config_manager.save()

    if not PROCESSORS[config["mode"]](config, settings):
        logger.error("[bold red]✗ Job failed[/]")
        return 1

    if config_manager is not None:
        config_manager.add_recent_file(config["input"])
        config_manager.save()
    logger.info("[bold green]✓ Done[/]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
