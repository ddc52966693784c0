"""Model manager: locate, download and load the classifier model.

The model and label files come from local paths when configured, otherwise
from a HuggingFace repository. The loaded classifier is cached for the
lifetime of the manager.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download

from plantex.errors import ModelLoadError
from plantex.ml.engine import OnnxInferenceEngine, build_providers, build_session_options
from plantex.ml.image_classifier import ImageClassifier
from plantex.ml.labels import load_labels

if TYPE_CHECKING:
    from plantex.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for classifier lifecycle management."""

    @property
    def model_name(self) -> str:
        """Return the configured model identifier."""
        ...

    def get_classifier(self) -> ImageClassifier:
        """Return the cached classifier, loading it on first use."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Drop the cached classifier."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves model files and builds an ONNX-backed ImageClassifier."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._classifier: ImageClassifier | None = None

        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

    @property
    def model_name(self) -> str:
        return self._settings.model_name

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self) -> tuple[Path, Path]:
        """Return local paths of the model and label files, downloading if needed."""
        return (
            self._resolve(self._settings.model_path, self._settings.model_filename),
            self._resolve(self._settings.labels_path, self._settings.labels_filename),
        )

    def get_classifier(self) -> ImageClassifier:
        """Return the cached ImageClassifier, creating one if needed."""
        with self._lock:
            if self._classifier is not None:
                return self._classifier

        model_path, labels_path = self.ensure_downloaded()
        engine = OnnxInferenceEngine(
            model_path,
            providers=self._providers,
            session_options=self._session_options,
        )
        classifier = ImageClassifier(
            engine,
            load_labels(labels_path),
            top_k=self._settings.top_k,
            name=self.model_name,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            if self._classifier is not None:
                return self._classifier
            self._classifier = classifier
            logger.info("Loaded classifier %s from %s", self.model_name, model_path)
            return classifier

    def get_loaded_models(self) -> list[str]:
        """Return names of models with a live classifier."""
        with self._lock:
            return [] if self._classifier is None else [self.model_name]

    def shutdown(self) -> None:
        """Drop the cached classifier."""
        with self._lock:
            self._classifier = None
            logger.info("Classifier %s unloaded", self.model_name)

    # -- Internal -----------------------------------------------------------

    def _resolve(self, local_path: str | None, filename: str) -> Path:
        if local_path is not None:
            path = Path(local_path)
            if not path.is_file():
                raise ModelLoadError(f"File not found: {path}")
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelLoadError(
                f"No source for {filename}: set PLANTEX_MODEL_PATH/PLANTEX_LABELS_PATH or PLANTEX_MODEL_REPO_ID"
            )

        cached = self._models_dir / filename
        if cached.is_file():
            return cached

        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=filename,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:  # network, auth and missing-file errors all mean no model
            raise ModelLoadError(f"Could not download {filename} from {repo_id}: {exc}") from exc
        logger.info("Downloaded %s from %s to %s", filename, repo_id, downloaded)
        return downloaded
