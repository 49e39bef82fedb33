#!/usr/bin/env python3
import sys
from pathlib import Path

from PIL import UnidentifiedImageError

from ccl.file_utils import read_png_metadata


def extract_png_metadata(filepath: Path):
    """
    Prints the cclabel metadata embedded in a label or preview PNG.
    """
    print(f"--- cclabel Metadata for PNG: {filepath.name} ---")
    try:
        metadata = read_png_metadata(filepath)
        if metadata:
            for key, value in metadata.items():
                print(f"  {key}: {value}")
        else:
            print("  No cclabel-specific metadata found.")
    except UnidentifiedImageError:
        print(f"Error: Not a readable image: {filepath}")
        sys.exit(1)
    print("-" * (30 + len(filepath.name)))


def main():
    if len(sys.argv) < 2:
        print("Usage: python extract_cclabel_meta.py <filename.png>")
        sys.exit(1)

    filepath = Path(sys.argv[1])

    if not filepath.is_file():
        print(f"Error: File not found: {filepath}")
        sys.exit(1)

    if filepath.suffix.lower() != ".png":
        print(f"Error: Unsupported file type '{filepath.suffix.lower()}'. Please provide a .png file.")
        sys.exit(1)

    extract_png_metadata(filepath)

if __name__ == "__main__":
    main()
