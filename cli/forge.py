#!/usr/bin/env python3
"""
PresetForge - Image Preset Batch Processor CLI

Runs single images through the operation pipeline, computes smart crops and
fans image folders out across output presets.
"""

import click
import sys
from pathlib import Path
from typing import List, Tuple
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, BarColumn, SpinnerColumn, TextColumn
from rich.panel import Panel
from rich.text import Text

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from presetforge import __version__
from presetforge.core import codec
from presetforge.core.archive import ArchiveBuilder
from presetforge.core.batch import BatchOrchestrator
from presetforge.core.download import DirectoryDelivery, DownloadManager
from presetforge.core.errors import DeliveryError, ProcessingError
from presetforge.core.geometry import CropArea
from presetforge.core.offload import run_pipeline_offloaded
from presetforge.core.pipeline import (
    ConvertSpec,
    CropSpec,
    ImageAsset,
    ImagePipeline,
    PipelineRequest,
    ResizeSpec,
    RotateSpec,
)
from presetforge.core.presets import builtin_presets, get_preset, load_presets, size_preset
from presetforge.core.smart_crop import SmartCropper
from presetforge.utils.config import Config, recommend_pool_size
from presetforge.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)

IMAGE_PATTERNS = ['*.png', '*.jpg', '*.jpeg', '*.webp', '*.bmp', '*.gif', '*.tif', '*.tiff']

BANNER = f"""
================================================================

    PRESETFORGE - Image Preset Batch Processor
    ------------------------------------------------

    Version:     {__version__}

================================================================
"""


def load_asset(path: Path) -> ImageAsset:
    try:
        mime_type = codec.mime_type_for(path.suffix.lstrip('.'))
    except ProcessingError:
        mime_type = None
    return ImageAsset(path.name, path.read_bytes(), mime_type)


def find_images(images_dir: Path) -> List[Path]:
    paths = set()
    for pattern in IMAGE_PATTERNS:
        paths.update(images_dir.glob(f"**/{pattern}"))
    return sorted(paths)


def parse_pair(value: str, separators: str) -> Tuple[int, int]:
    for sep in separators:
        if sep in value:
            left, right = value.split(sep, 1)
            return int(left), int(right)
    raise click.BadParameter(f"Expected two numbers separated by one of '{separators}', got {value}")


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--quiet', '-q', is_flag=True, help='Hide the banner')
@click.pass_context
def cli(ctx, config, quiet):
    """
    PresetForge - Image Preset Batch Processor

    Resize, crop, rotate, compress and convert images, one at a time or
    across a set of output presets.
    """
    if not quiet:
        console.print(BANNER, style="bold cyan")

    if config:
        ctx.obj = Config.load(config)
        console.print(f"[green]Loaded configuration from {config}[/green]")
    else:
        ctx.obj = Config()


@cli.command('process')
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@click.option('--out', '-o', required=True, type=click.Path(), help='Output file')
@click.option('--width', type=int, help='Target width')
@click.option('--height', type=int, help='Target height')
@click.option('--percentage', type=float, help='Scale by percentage')
@click.option('--fit', type=click.Choice(['stretch', 'cover']), default='stretch',
              help='How to fit when both width and height are given')
@click.option('--crop', 'crop_box', help='Crop rectangle as x,y,w,h (applied before resizing)')
@click.option('--rotate', 'angle', type=float, default=0.0, help='Clockwise rotation in degrees')
@click.option('--flip-h', is_flag=True, help='Mirror horizontally')
@click.option('--flip-v', is_flag=True, help='Mirror vertically')
@click.option('--format', 'output_format', help='Output format (jpeg, png, webp, ...)')
@click.option('--quality', type=click.IntRange(0, 100), help='Encoding quality 0-100')
@click.option('--no-transparency', is_flag=True, help='Flatten transparency onto the background colour')
@click.option('--inline', is_flag=True, help='Run in this process instead of a worker process')
@click.pass_obj
def process_cmd(config, image, out, width, height, percentage, fit, crop_box, angle,
                flip_h, flip_v, output_format, quality, no_transparency, inline):
    """Run one image through the operation pipeline."""
    operations = []
    if crop_box:
        try:
            x, y, w, h = (int(part) for part in crop_box.split(','))
        except ValueError:
            raise click.BadParameter(f"Expected x,y,w,h, got {crop_box}")
        operations.append(CropSpec(CropArea(x, y, w, h)))
    if width or height or percentage:
        operations.append(ResizeSpec(width=width, height=height, percentage=percentage, fit=fit))
    if angle or flip_h or flip_v:
        operations.append(RotateSpec(angle, flip_h, flip_v))

    out = Path(out)
    output_format = output_format or (out.suffix.lstrip('.') or None)
    if no_transparency:
        operations.append(ConvertSpec(format=output_format or config.default_output_format,
                                      quality=quality, preserve_transparency=False))

    request = PipelineRequest(load_asset(Path(image)), operations, output_format, quality)

    with console.status("Processing...", spinner="dots"):
        if inline:
            result = ImagePipeline(config).execute(request)
        else:
            result = run_pipeline_offloaded(request, config)

    if not result.success:
        console.print(f"[red][FAIL] {result.stage}: {result.error_message}[/red]")
        sys.exit(1)

    DownloadManager(DirectoryDelivery(out.parent), config).download_single(out.name, result.take_data())

    table = Table(title="Processing Result")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Dimensions", f"{result.width}x{result.height}")
    table.add_row("Format", result.format)
    table.add_row("Original Size", f"{result.original_size / 1024:.1f} KB")
    table.add_row("Processed Size", f"{result.processed_size / 1024:.1f} KB")
    table.add_row("Time", f"{result.processing_time_ms:.0f} ms")
    console.print(table)
    console.print(f"\n[green][OK] Saved to {out}[/green]")


@cli.command('smart-crop')
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@click.option('--aspect', help='Target aspect ratio as W:H')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
@click.pass_obj
def smart_crop_cmd(config, image, aspect, output_json):
    """Compute a subject-aware crop rectangle."""
    asset = load_asset(Path(image))
    target = parse_pair(aspect, ':/x') if aspect else None

    try:
        raster = asset.decode(max_bytes=config.max_input_bytes)
    except ProcessingError as e:
        console.print(f"[red][FAIL] {e}[/red]")
        sys.exit(1)

    result = SmartCropper(config=config).smart_crop(raster, target)
    asset.release()

    if output_json:
        console.print_json(data={
            'crop_area': result.crop_area.to_dict(),
            'confidence': result.confidence,
            'subjects': len(result.detected_subjects),
        })
        return

    area = result.crop_area
    text = Text()
    text.append("Image: ", style="white")
    text.append(f"{asset.width}x{asset.height}\n", style="green")
    text.append("Crop: ", style="white")
    text.append(f"x={area.x} y={area.y} {area.width}x{area.height}\n", style="green")
    text.append("Confidence: ", style="white")
    text.append(f"{result.confidence:.2f}\n", style="yellow")
    if result.used_fallback:
        text.append("No subjects detected, centred crop used\n", style="dim")
    console.print(Panel(text, title="Smart Crop", border_style="cyan"))


@cli.command('batch')
@click.option('--images-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='Directory containing images to process')
@click.option('--preset', '-p', 'preset_ids', multiple=True, help='Builtin preset id (repeatable)')
@click.option('--size', '-s', 'sizes', multiple=True, help='Extra WxH size preset (repeatable)')
@click.option('--presets-file', type=click.Path(exists=True), help='JSON file with custom presets')
@click.option('--smart', is_flag=True, help='Smart-crop size presets to their ratio')
@click.option('--workers', '-w', type=int, help='Worker pool size')
@click.option('--timeout', type=float, help='Per-job timeout in seconds')
@click.option('--out', '-o', type=click.Path(file_okay=False), help='Write files into this directory')
@click.option('--zip', 'zip_path', type=click.Path(dir_okay=False), help='Write one ZIP archive (falls back to --out when it is too large)')
@click.pass_obj
def batch_cmd(config, images_dir, preset_ids, sizes, presets_file, smart, workers, timeout, out, zip_path):
    """Process every image with every selected preset."""
    presets = []
    for preset_id in preset_ids:
        preset = get_preset(preset_id)
        if preset is None:
            raise click.BadParameter(f"Unknown preset: {preset_id}", param_hint='--preset')
        presets.append(preset)
    for size in sizes:
        width, height = parse_pair(size, 'x')
        presets.append(size_preset(width, height, crop_mode='smart' if smart else 'center'))
    if presets_file:
        presets.extend(load_presets(presets_file))

    if not presets:
        raise click.UsageError("Select at least one --preset, --size or --presets-file")

    if workers:
        config.update(pool_size=workers)
    else:
        config.update(pool_size=recommend_pool_size(config))
    if timeout:
        config.update(job_timeout_s=timeout)

    paths = find_images(Path(images_dir))
    if not paths:
        console.print("[red]No images found[/red]")
        sys.exit(1)

    assets = [load_asset(path) for path in paths]
    console.print(f"\n[cyan]Found {len(assets)} images, {len(presets)} presets, "
                  f"{config.pool_size} workers[/cyan]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console
    ) as progress:
        task = progress.add_task("Processing images...", total=len(assets) * len(presets))

        def on_progress(completed: int, total: int, message: str) -> None:
            progress.update(task, completed=completed, description=message)

        orchestrator = BatchOrchestrator(config, progress_callback=on_progress)
        report = orchestrator.run(assets, presets)

    table = Table(title="Batch Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total Jobs", str(len(report.jobs)))
    table.add_row("Succeeded", str(len(report.succeeded)))
    table.add_row("Failed", str(len(report.failed)))
    table.add_row("Peak Concurrency", str(report.peak_concurrency))
    table.add_row("Elapsed", f"{report.elapsed_s:.2f}s")
    console.print(table)

    for line in report.error_lines():
        console.print(f"  - {line}", style="yellow")

    archived = False
    if zip_path:
        zip_path = Path(zip_path)
        builder = ArchiveBuilder(config)
        try:
            builder.add_report(report)
            builder.write(zip_path)
        except ProcessingError as e:
            console.print(f"[red][FAIL] {e}[/red]")
            if not out:
                sys.exit(1)
            console.print(f"[yellow]Writing individual files to {out} instead[/yellow]")
        else:
            archived = True
            console.print(f"\n[green][OK] Archive saved to {zip_path}[/green]")

    if out and not archived:
        manager = DownloadManager(DirectoryDelivery(out), config)
        try:
            delivered = manager.download_report(report)
        except DeliveryError as e:
            console.print(f"[red][FAIL] {e}[/red]")
            sys.exit(1)
        console.print(f"\n[green][OK] Wrote {len(delivered)} files to {out}[/green]")

    if report.failed:
        sys.exit(2)


@cli.command('presets')
@click.option('--category', help='Only show one platform')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
def presets_cmd(category, output_json):
    """List builtin presets."""
    presets = [p for p in builtin_presets() if category is None or p.category == category]

    if output_json:
        console.print_json(data=[p.to_dict() for p in presets])
        return

    table = Table(title="Builtin Presets")
    table.add_column("ID", style="cyan")
    table.add_column("Category", style="magenta")
    table.add_column("Name", style="white")
    table.add_column("Size", style="green")
    for preset in presets:
        width, height = preset.target_size
        table.add_row(preset.preset_id, preset.category, preset.name, f"{width}x{height}")
    console.print(table)


if __name__ == "__main__":
    cli()
