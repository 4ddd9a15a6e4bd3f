from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import numpy as np


class FaceEmbedder(Protocol):
    # Identifies the model; records from different extractors never mix.
    name: str

    def embed(self, face: np.ndarray) -> np.ndarray:
        ...


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec.astype(np.float32)
    return (vec / norm).astype(np.float32)


@dataclass
class ArcFaceEmbedderConfig:
    model_name: str = "buffalo_l"
    providers: Sequence[str] = ("CPUExecutionProvider",)


class ArcFaceEmbedder:
    """Embeds preprocessed 112x112 BGR face crops with the InsightFace ArcFace model."""

    def __init__(self, config: Optional[ArcFaceEmbedderConfig] = None) -> None:
        self.config = config or ArcFaceEmbedderConfig()
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:
            raise ImportError(
                "insightface is required. Install with: pip install insightface onnxruntime"
            ) from exc

        app = FaceAnalysis(
            name=self.config.model_name,
            providers=list(self.config.providers),
            allowed_modules=["detection", "recognition"],
        )
        app.prepare(ctx_id=-1)
        self._model = app.models["recognition"]
        self.name = f"insightface/{self.config.model_name}"

    def embed(self, face: np.ndarray) -> np.ndarray:
        feat = self._model.get_feat(face)
        return l2_normalize(np.asarray(feat, dtype=np.float32).reshape(-1))
