"""
Embedding provider: a lazily-loaded, process-wide model handle.

The model itself is opaque. A loader callable builds it on first use and
returns a callable mapping an RGB uint8 image to a flat float vector.
Loading happens at most once per provider, even under concurrent first
use; a failed load is remembered and raised as ModelUnavailable until the
caller explicitly resets the provider.

The default backend runs a network file through OpenCV's DNN module, so
any ONNX/Caffe/TensorFlow export that cv2.dnn.readNet understands can be
used as the feature extractor.
"""

import os
import logging
import threading
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .errors import MalformedEmbedding, ModelUnavailable
from .preprocessing import ImageSource, decode_image, normalize_image
from .vectors import as_vector, normalize

logger = logging.getLogger(__name__)

ModelFn = Callable[[np.ndarray], np.ndarray]

# Network configuration for the default OpenCV DNN backend.
# The defaults describe a MobileNetV2-style ONNX export taking 224x224 RGB
# input scaled to [0, 1].
EMBEDDING_MODEL_PATH = os.environ.get("EMBEDDING_MODEL_PATH", "models/mobilenet_v2.onnx")
EMBEDDING_MODEL_CONFIG = os.environ.get("EMBEDDING_MODEL_CONFIG", "")
EMBEDDING_OUTPUT_LAYER = os.environ.get("EMBEDDING_OUTPUT_LAYER", "")
EMBEDDING_INPUT_SIZE = int(os.environ.get("EMBEDDING_INPUT_SIZE", "224"))
EMBEDDING_SCALE = float(os.environ.get("EMBEDDING_SCALE", str(1.0 / 255.0)))
EMBEDDING_MEAN = tuple(
    float(x) for x in os.environ.get("EMBEDDING_MEAN", "0,0,0").split(",")
)


class DnnEmbeddingModel:
    """
    Feature extractor backed by cv2.dnn.

    The image is resized into a blob, pushed through the network, and the
    chosen layer's activation is flattened into the embedding.
    """

    def __init__(self,
                 model_path: str,
                 config_path: str = "",
                 output_layer: Optional[str] = None,
                 input_size: int = 224,
                 scale: float = 1.0 / 255.0,
                 mean: Tuple[float, float, float] = (0.0, 0.0, 0.0)):
        """
        Load the network from disk.

        Args:
            model_path: Network weights (.onnx, .pb, .caffemodel, ...).
            config_path: Optional network description (.prototxt, .pbtxt).
            output_layer: Layer whose activation is the embedding. Defaults
                to the network's final output.
            input_size: Square input resolution expected by the network.
            scale: Multiplier applied to pixel values.
            mean: Per-channel mean subtracted before scaling.

        Raises:
            ModelUnavailable: If the file is missing or cannot be parsed.
        """
        if not os.path.exists(model_path):
            raise ModelUnavailable(f"Model file not found: {model_path}")

        try:
            self.net = cv2.dnn.readNet(model_path, config_path)
        except cv2.error as e:
            raise ModelUnavailable(f"Could not load model {model_path}: {e}") from e

        if self.net.empty():
            raise ModelUnavailable(f"Model {model_path} loaded with no layers")

        self.output_layer = output_layer or None
        self.input_size = input_size
        self.scale = scale
        self.mean = mean
        # cv2.dnn.Net is not safe to run from several threads at once
        self._forward_lock = threading.Lock()

        logger.info(f"Loaded DNN model from {model_path}")

    def __call__(self, image_np: np.ndarray) -> np.ndarray:
        image_np = normalize_image(image_np)
        blob = cv2.dnn.blobFromImage(
            image_np,
            scalefactor=self.scale,
            size=(self.input_size, self.input_size),
            mean=self.mean,
            swapRB=False,
            crop=False,
        )
        with self._forward_lock:
            self.net.setInput(blob)
            if self.output_layer:
                activation = self.net.forward(self.output_layer)
            else:
                activation = self.net.forward()
        return np.asarray(activation, dtype=np.float32).flatten()


def load_dnn_model() -> DnnEmbeddingModel:
    """Build the default DNN backend from environment configuration."""
    return DnnEmbeddingModel(
        EMBEDDING_MODEL_PATH,
        config_path=EMBEDDING_MODEL_CONFIG,
        output_layer=EMBEDDING_OUTPUT_LAYER,
        input_size=EMBEDDING_INPUT_SIZE,
        scale=EMBEDDING_SCALE,
        mean=EMBEDDING_MEAN,
    )


class EmbeddingProvider:
    """
    Thread-safe, initialize-once wrapper around an embedding model.

    Inject one provider into the reconciler and the search engine rather
    than reaching for a global model.
    """

    def __init__(self, loader: Callable[[], ModelFn]):
        self._loader = loader
        self._model: Optional[ModelFn] = None
        self._load_error: Optional[ModelUnavailable] = None
        self._lock = threading.Lock()
        self.dimension: Optional[int] = None

    @property
    def ready(self) -> bool:
        return self._model is not None

    @property
    def failed(self) -> bool:
        return self._load_error is not None

    def load(self) -> ModelFn:
        """
        Return the model, loading it on first use.

        Concurrent first callers block on the same load and see the same
        outcome. A failed load leaves no model behind and is re-raised on
        every later call until reset() is called.

        Raises:
            ModelUnavailable: If the loader failed.
        """
        model = self._model
        if model is not None:
            return model

        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise self._load_error

            logger.info("Initializing embedding model")
            try:
                model = self._loader()
            except ModelUnavailable as e:
                self._load_error = e
                logger.error(f"Embedding model unavailable: {e}")
                raise
            except Exception as e:
                error = ModelUnavailable(f"Embedding model failed to initialize: {e}")
                self._load_error = error
                logger.error(str(error))
                raise error from e

            if not callable(model):
                error = ModelUnavailable(
                    f"Loader returned a non-callable model: {type(model).__name__}"
                )
                self._load_error = error
                raise error

            self._model = model
            logger.info("Embedding model ready")
            return model

    def reset(self):
        """Forget the loaded model or the remembered failure."""
        with self._lock:
            self._model = None
            self._load_error = None
            self.dimension = None

    def embed(self, image_np: np.ndarray) -> np.ndarray:
        """
        Compute the raw (un-normalized) embedding of a decoded image.

        Raises:
            ModelUnavailable: If the model cannot be loaded.
            MalformedEmbedding: If the model returns an empty vector or one
                whose length differs from earlier embeddings.
        """
        model = self.load()
        vector = as_vector(model(image_np))

        if vector.size == 0:
            raise MalformedEmbedding("Model returned an empty embedding")

        if self.dimension is None:
            self.dimension = int(vector.size)
        elif vector.size != self.dimension:
            raise MalformedEmbedding(
                f"Model returned {vector.size} components, expected {self.dimension}"
            )

        return vector

    def embed_normalized(self, image_np: np.ndarray) -> np.ndarray:
        """Embed and L2-normalize in one step."""
        return normalize(self.embed(image_np))

    def embed_image(self, source: ImageSource) -> np.ndarray:
        """Decode an image source and return its normalized embedding."""
        return self.embed_normalized(decode_image(source))


_default_provider: Optional[EmbeddingProvider] = None
_default_lock = threading.Lock()


def get_default_provider() -> EmbeddingProvider:
    """
    Process-wide provider backed by the configured DNN model.

    Creating the provider is cheap; the model is only loaded on first embed.
    """
    global _default_provider
    if _default_provider is None:
        with _default_lock:
            if _default_provider is None:
                _default_provider = EmbeddingProvider(load_dnn_model)
    return _default_provider
