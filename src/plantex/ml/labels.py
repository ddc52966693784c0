"""Label file loading: one label per line, in model output order."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_labels(text: str) -> list[str]:
    """Split label file contents into labels, skipping blank lines."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def load_labels(path: str | Path) -> list[str]:
    """Read labels from a UTF-8 text file."""
    labels = parse_labels(Path(path).read_text(encoding="utf-8"))
    logger.info("Loaded %d labels from %s", len(labels), path)
    return labels
