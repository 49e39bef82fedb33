import typer
from ccl import backend, file_utils, palette_tools, regions
from ccl.errors import ConfigurationError, DeviceExecutionError
import logging
import os
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from PIL import UnidentifiedImageError
import rich.traceback
from rich.logging import RichHandler


class CCLFile(Enum):
    LABELS_PNG = "labels_png"
    LABELS_NPY = "labels_npy"
    PREVIEW = "preview"


CCL_FILE_BASENAMES: Dict[CCLFile, str] = {
    CCLFile.LABELS_PNG: "ccl-labels.png",
    CCLFile.LABELS_NPY: "ccl-labels.npy",
    CCLFile.PREVIEW: "ccl-preview.png",
}


def validate_output_dir(
    output_dir: Path, overwrite: bool = False, expect: Optional[List[CCLFile]] = None,
) -> Dict[CCLFile, Path]:
    files_to_check_for_clobber: List[Path] = []
    if expect:
        for ccl_file_key in expect:
            files_to_check_for_clobber.append(output_dir / CCL_FILE_BASENAMES[ccl_file_key])

    if not overwrite and files_to_check_for_clobber:
        clobbered_files_found = [str(p) for p in files_to_check_for_clobber if p.exists()]
        if clobbered_files_found:
            typer.secho("Error: Files already exist:", fg=typer.colors.RED)
            for path_str in clobbered_files_found: typer.secho(f"  {path_str}", fg=typer.colors.RED)
            typer.secho("Use --yes (-y) to overwrite.", fg=typer.colors.YELLOW); raise typer.Exit(code=1)

    return {key: output_dir / name for key, name in CCL_FILE_BASENAMES.items()}


def cclabel_cli(
    input_path: Path = typer.Argument(
        ...,
        help="Input image file (e.g., mask.png). Converted to greyscale and thresholded.",
        metavar="INPUT_FILE",
        exists=True, file_okay=True, dir_okay=False, readable=True, resolve_path=True,
    ),
    output_dir: Path = typer.Argument(
        ...,
        help="Directory for output files. Will be created if it doesn't exist.",
        metavar="OUTPUT_DIRECTORY",
        file_okay=False, dir_okay=True, writable=True, resolve_path=True,
    ),
    connectivity: int = typer.Option(
        4, "--connectivity", "-c", help="Pixel adjacency: 4 (edges) or 8 (edges and diagonals). Default: 4."
    ),
    threshold: int = typer.Option(
        128, "--threshold", min=0, max=255, help="Grey level at or above which a pixel is foreground. Default: 128."
    ),
    invert: bool = typer.Option(False, "--invert", help="Treat dark pixels as foreground."),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", min=1,
        help="Stop equivalence resolution after this many sweeps. Components may come back split."
    ),
    backend_name: Optional[str] = typer.Option(
        None, "--backend", help="Execution backend: cuda (numba kernels) or array. Default: picked automatically."
    ),
    npy: bool = typer.Option(False, "--npy/--no-npy", help="Also write the labels as a .npy array."),
    preview: bool = typer.Option(True, "--preview/--no-preview", help="Write a colorized preview PNG. Default: True."),
    seed: int = typer.Option(0, "--seed", help="Seed for the preview colours. Default: 0."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Overwrite existing files."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log stage progress."),
):
    """
    Labels the connected components of a binary image.
    """
    command_line_str = " ".join(sys.argv)

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=[RichHandler(show_path=False)])

    try:
        os.makedirs(output_dir, exist_ok=True)
        typer.echo(f"Using output directory: {output_dir}")
    except Exception as e:
        typer.secho(f"Error creating output directory {output_dir}: {e}", fg=typer.colors.RED); raise typer.Exit(code=1)

    expected_outputs: List[CCLFile] = [CCLFile.LABELS_PNG]
    if npy:
        expected_outputs.append(CCLFile.LABELS_NPY)
    if preview:
        expected_outputs.append(CCLFile.PREVIEW)
    output_paths = validate_output_dir(output_dir, overwrite=yes, expect=expected_outputs)

    try:
        mask = file_utils.load_binary_image(input_path, threshold=threshold, invert=invert)
    except (FileNotFoundError, UnidentifiedImageError) as e:
        typer.secho(f"Error loading input image {input_path}: {e}", fg=typer.colors.RED); raise typer.Exit(code=1)
    typer.echo(f"Loaded {mask.shape[1]}x{mask.shape[0]} mask with {int(mask.sum())} foreground pixels.")

    if backend.GPU_ENABLED:
        typer.echo("CuPy found, labeling on the GPU.")
        image = backend.xp.asarray(mask)
    else:
        image = mask

    start = time.perf_counter()
    try:
        labels_xp, num_components = regions.label(
            image, connectivity=connectivity, max_iterations=max_iterations, backend=backend_name
        )
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED); raise typer.Exit(code=1)
    except DeviceExecutionError as e:
        typer.secho(f"Device error: {e}", fg=typer.colors.RED); raise typer.Exit(code=1)
    elapsed = time.perf_counter() - start
    labels = backend.to_host(labels_xp)

    typer.echo(f"Found {num_components} components ({elapsed * 1000:.2f} ms).")

    metadata = {
        "Components": str(num_components),
        "Connectivity": str(connectivity),
        "Threshold": str(threshold),
        "Inverted": str(invert),
        "Source": input_path.name,
    }

    write_png = num_components <= file_utils.PNG_MAX_LABEL
    if not write_png:
        typer.secho(f"Warning: {num_components} labels do not fit in a 16-bit PNG, writing the .npy array instead.",
                    fg=typer.colors.YELLOW)
        if not npy:
            validate_output_dir(output_dir, overwrite=yes, expect=[CCLFile.LABELS_NPY])
            npy = True

    if write_png:
        labels_png_path = output_paths[CCLFile.LABELS_PNG]
        file_utils.save_labels_png(labels, labels_png_path, command_line_invocation=command_line_str,
                                   additional_metadata=metadata)
        typer.echo(f"Label PNG saved to: {labels_png_path}")

    if npy:
        labels_npy_path = output_paths[CCLFile.LABELS_NPY]
        file_utils.save_labels_npy(labels, labels_npy_path)
        typer.echo(f"Label array saved to: {labels_npy_path}")

    if preview:
        preview_path = output_paths[CCLFile.PREVIEW]
        palette = palette_tools.make_label_palette(num_components, seed=seed)
        file_utils.save_preview_png(palette_tools.colorize_labels(labels, palette), preview_path,
                                    command_line_invocation=command_line_str)
        typer.echo(f"Preview saved to: {preview_path}")

    typer.secho("\nProcessing complete!", fg=typer.colors.GREEN)


if __name__ == "__main__":
    rich.traceback.install(show_locals=False, suppress=[typer, __name__]) # type: ignore
    typer.run(cclabel_cli)
