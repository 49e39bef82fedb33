import numpy as np


def make_label_palette(num_labels, seed=0):
    """
    Builds one RGB colour per label, background included.

    Args:
        num_labels (int): Number of foreground labels K.
        seed (int): Seed for the colour generator, the same seed gives the same palette.

    Returns:
        np.ndarray: uint8 array of shape (K + 1, 3); row 0 (background) is black.
    """
    rng = np.random.default_rng(seed)
    palette = rng.integers(64, 256, size=(num_labels + 1, 3), dtype=np.uint8)
    palette[0] = 0
    return palette


def colorize_labels(labels, palette):
    """
    Map every pixel's label to its palette colour.

    Args:
        labels (np.ndarray): HxW dense label array, values 0..K
        palette (np.ndarray): (K + 1)x3 palette array

    Returns:
        np.ndarray: HxWx3 uint8 RGB image
    """
    if labels.size and int(labels.max()) >= len(palette):
        raise ValueError(f"Palette has {len(palette)} colours but labels reach {int(labels.max())}")
    return palette[labels.astype(np.intp)]
