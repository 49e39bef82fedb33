import logging
import re
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
from PIL import Image, PngImagePlugin

logger = logging.getLogger(__name__)

PNG_METADATA_PREFIX = "ccl:"
PNG_MAX_LABEL = 65535


def load_binary_image(path: Union[str, Path], threshold: int = 128, invert: bool = False) -> np.ndarray:
    """
    Loads an image file as a 0/1 foreground mask.

    Args:
        path (str | Path): Image file readable by Pillow.
        threshold (int): Grey values at or above this are foreground.
        invert (bool): Treat dark pixels as foreground instead.

    Returns:
        np.ndarray: uint8 array of shape (H, W) holding 0 and 1.
    """
    with Image.open(path) as img:
        grey = np.asarray(img.convert("L"))
    mask = grey >= threshold
    if invert:
        mask = ~mask
    return mask.astype(np.uint8)


def _clean_metadata_key(key: str) -> str:
    key_clean = re.sub(r'\s+', '_', key)
    key_clean = re.sub(r'[^a-zA-Z0-9_.-]', '', key_clean)
    if not re.match(r'^[a-zA-Z_]', key_clean):
        key_clean = "ccl_" + key_clean
    # tEXt keywords are limited to 79 bytes, leave room for the prefix
    return key_clean[:70]


def save_labels_png(
    labels: np.ndarray,
    output_path: Path,
    command_line_invocation: Optional[str] = None,
    additional_metadata: Optional[Dict[str, str]] = None
):
    """
    Saves a label array as a 16-bit greyscale PNG, embedding metadata as tEXt chunks.

    Raises:
        ValueError: if a label does not fit in 16 bits.
    """
    if not isinstance(output_path, Path):
        output_path = Path(output_path)

    max_label = int(labels.max()) if labels.size else 0
    if max_label > PNG_MAX_LABEL:
        raise ValueError(f"{max_label} labels do not fit in a 16-bit PNG, use the .npy output instead")

    if not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)

    png_info = PngImagePlugin.PngInfo()
    if command_line_invocation:
        png_info.add_text(f"{PNG_METADATA_PREFIX}command_line", command_line_invocation)
    png_info.add_text("Software", "cclabel")

    if additional_metadata:
        for key, value in additional_metadata.items():
            png_info.add_text(f"{PNG_METADATA_PREFIX}{_clean_metadata_key(key)}", str(value))

    image_to_save = Image.fromarray(labels.astype(np.uint16))
    image_to_save.save(output_path, "PNG", pnginfo=png_info)
    logger.debug("wrote %s", output_path)


def save_labels_npy(labels: np.ndarray, output_path: Path):
    if not isinstance(output_path, Path):
        output_path = Path(output_path)
    if not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(output_path, labels)


def save_preview_png(preview: np.ndarray, output_path: Path,
                     command_line_invocation: Optional[str] = None):
    png_info = PngImagePlugin.PngInfo()
    if command_line_invocation:
        png_info.add_text(f"{PNG_METADATA_PREFIX}command_line", command_line_invocation)
    Image.fromarray(preview.astype(np.uint8)).save(output_path, "PNG", pnginfo=png_info)


def read_png_metadata(path: Union[str, Path]) -> Dict[str, str]:
    """Returns the ``ccl:`` tEXt entries of a PNG, prefix stripped."""
    with Image.open(path) as img:
        return {
            key[len(PNG_METADATA_PREFIX):]: value
            for key, value in img.info.items()
            if isinstance(key, str) and key.startswith(PNG_METADATA_PREFIX)
        }
