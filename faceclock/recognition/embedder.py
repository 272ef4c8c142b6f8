# faceclock/recognition/embedder.py
"""
Face embedder - MobileFaceNet, INT8 quantized.

Input: [1, 112, 112, 3] int8. Output: [1, D] int8, dequantized to float32
and L2-normalized. D is read from the model (128 for the stock model).
"""
import logging
import threading

import cv2
import numpy as np

from ..core.tflite_helper import get_interpreter, quantization

logger = logging.getLogger(__name__)

INPUT_HEIGHT = 112
INPUT_WIDTH = 112
EMBEDDING_DIM = 128

DEFAULT_INPUT_SCALE = 0.007874015718698502
DEFAULT_INPUT_ZERO_POINT = 0
DEFAULT_OUTPUT_SCALE = 0.07505225390195847
DEFAULT_OUTPUT_ZERO_POINT = 0


class FaceEmbedder:
    """Turns a cropped BGR face into an L2-normalized embedding."""

    def __init__(self, model_path, num_threads=None, enable_histogram_eq=False):
        self._lock = threading.Lock()
        self.model_path = model_path
        self.enable_histogram_eq = enable_histogram_eq

        self.interpreter = get_interpreter(model_path, num_threads=num_threads)
        self.interpreter.allocate_tensors()
        input_detail = self.interpreter.get_input_details()[0]
        output_detail = self.interpreter.get_output_details()[0]

        in_shape = [int(d) for d in input_detail.get('shape', (1, INPUT_HEIGHT, INPUT_WIDTH, 3))]
        self.input_size = (
            in_shape[2] if len(in_shape) >= 3 else INPUT_WIDTH,
            in_shape[1] if len(in_shape) >= 2 else INPUT_HEIGHT,
        )
        out_shape = output_detail.get('shape', (1, EMBEDDING_DIM))
        self._embedding_dim = int(out_shape[-1]) if len(out_shape) >= 2 else EMBEDDING_DIM

        self._input_index = input_detail['index']
        self._input_dtype = input_detail['dtype']
        self._input_quant = quantization(input_detail, DEFAULT_INPUT_SCALE, DEFAULT_INPUT_ZERO_POINT)
        self._output_index = output_detail['index']
        self._output_quant = quantization(output_detail, DEFAULT_OUTPUT_SCALE, DEFAULT_OUTPUT_ZERO_POINT)

        logger.info(f"[Embedder] Loaded: {model_path} (dim={self._embedding_dim})")

    @property
    def embedding_dim(self):
        return self._embedding_dim

    def _equalize(self, rgb):
        """Histogram-equalize luma only, keeps colors."""
        yuv = cv2.cvtColor(rgb, cv2.COLOR_RGB2YUV)
        yuv[:, :, 0] = cv2.equalizeHist(yuv[:, :, 0])
        return cv2.cvtColor(yuv, cv2.COLOR_YUV2RGB)

    def _preprocess(self, face_img):
        rgb = cv2.cvtColor(cv2.resize(face_img, self.input_size), cv2.COLOR_BGR2RGB)
        if self.enable_histogram_eq:
            rgb = self._equalize(rgb)

        if self._input_dtype == np.uint8:
            tensor = rgb.astype(np.uint8)
        else:
            tensor = (rgb.astype(np.float32) - 127.5) / 127.5
            if self._input_dtype == np.int8:
                scale, zero_point = self._input_quant
                tensor = np.clip(tensor / scale + zero_point, -128, 127).astype(np.int8)

        return tensor[np.newaxis, ...]

    def embed(self, face_img):
        """
        Returns:
            float32 array of shape (embedding_dim,), L2-normalized
        """
        tensor = self._preprocess(face_img)

        with self._lock:
            self.interpreter.set_tensor(self._input_index, tensor)
            self.interpreter.invoke()
            raw = np.array(self.interpreter.get_tensor(self._output_index)[0], copy=True)

        if raw.dtype in (np.int8, np.uint8):
            scale, zero_point = self._output_quant
            emb = (raw.astype(np.float32) - zero_point) * scale
        else:
            emb = raw.astype(np.float32)
        return emb / (np.linalg.norm(emb) + 1e-10)
