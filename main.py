"""
ZenTuner - Main Entry Point

Example usage:
    python main.py analyze path/to/song.wav
    python main.py --config config/config.yaml export --target 432 path/to/song.wav
"""

import sys

from zentuner.cli import main


if __name__ == "__main__":
    sys.exit(main())
