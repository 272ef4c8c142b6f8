# faceclock/recognition/detector.py
"""
Face detector - Ultra-Light RFB-320, INT8 quantized.

- Input: int8 [1, 240, 320, 3]
- Output: boxes [1, 4420, 4] and scores [1, 4420, 2], both int8

Thread-safe: inference runs under a lock.
"""
import logging
import threading
from math import ceil

import cv2
import numpy as np

from ..core.tflite_helper import get_interpreter, quantization

logger = logging.getLogger(__name__)

# Fallback quantization parameters if the model does not carry them
INPUT_SCALE = 0.0078125
INPUT_ZERO_POINT = -1

CENTER_VARIANCE = 0.1
SIZE_VARIANCE = 0.2
NMS_THRESHOLD = 0.3

PRIOR_STRIDES = (8, 16, 32, 64)
PRIOR_MIN_SIZES = ((10, 16, 24), (32, 48), (64, 96), (128, 176, 256))


class UltraLightFaceDetector:
    """
    SSD-style detector with pre-computed priors.

    Load errors from get_interpreter() propagate so callers can tell a
    missing model from a missing runtime.
    """

    def __init__(self, model_path, conf_threshold=0.6, num_threads=None):
        self._lock = threading.Lock()
        self.model_path = model_path
        self.conf_threshold = conf_threshold

        self.interpreter = get_interpreter(model_path, num_threads=num_threads)
        self.interpreter.allocate_tensors()
        input_detail = self.interpreter.get_input_details()[0]
        output_details = self.interpreter.get_output_details()

        # (width, height); stock model is 320x240
        shape = input_detail.get('shape')
        if shape is not None and len(shape) == 4:
            self.input_shape = (int(shape[2]), int(shape[1]))
        else:
            self.input_shape = (320, 240)

        self._input_index = input_detail['index']
        self._input_dtype = input_detail['dtype']
        self._input_quant = quantization(input_detail, INPUT_SCALE, INPUT_ZERO_POINT)
        self._outputs = [(d['index'], quantization(d)) for d in output_details]

        self._priors = generate_priors(self.input_shape)
        logger.info(f"[Detector] Loaded: {model_path} (priors={len(self._priors)})")

    def _preprocess(self, frame):
        """Resize, BGR -> RGB, normalize to [-1, 1], quantize if needed."""
        img = cv2.resize(frame, self.input_shape)
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        img = (img.astype(np.float32) - 127.5) / 127.5

        if self._input_dtype == np.int8:
            scale, zero_point = self._input_quant
            img = np.clip(np.round(img / scale + zero_point), -128, 127).astype(np.int8)

        return img[np.newaxis, ...]

    @staticmethod
    def _dequantize(output, quant):
        output = np.asarray(output)
        if output.dtype in (np.int8, np.uint8):
            scale, zero_point = quant
            return (output.astype(np.float32) - zero_point) * scale
        return output.astype(np.float32)

    def detect_faces(self, frame):
        """
        Detect faces in a BGR frame.

        Returns:
            List of dicts with 'box' [x, y, w, h] and 'confidence'
        """
        h_img, w_img = frame.shape[:2]
        tensor = self._preprocess(frame)

        with self._lock:
            self.interpreter.set_tensor(self._input_index, tensor)
            self.interpreter.invoke()
            raw = [
                (np.array(self.interpreter.get_tensor(index)[0], copy=True), quant)
                for index, quant in self._outputs[:2]
            ]

        first, second = (self._dequantize(out, quant) for out, quant in raw)
        # boxes have 4 columns, class scores 2
        boxes_enc, scores = (first, second) if first.shape[-1] == 4 else (second, first)

        face_scores = scores[:, 1]
        keep = face_scores > self.conf_threshold
        if not np.any(keep):
            return []

        return decode_boxes(
            boxes_enc[keep], face_scores[keep], self._priors[keep],
            (w_img, h_img), self.conf_threshold
        )


def decode_boxes(boxes_enc, scores, priors, image_size, conf_threshold):
    """Decode SSD offsets against priors, scale to pixels and apply NMS."""
    w_img, h_img = image_size
    boxes = np.concatenate([
        priors[:, :2] + boxes_enc[:, :2] * CENTER_VARIANCE * priors[:, 2:],
        priors[:, 2:] * np.exp(boxes_enc[:, 2:] * SIZE_VARIANCE)
    ], axis=1)

    # (cx, cy, w, h) -> (x_min, y_min, x_max, y_max)
    boxes[:, :2] -= boxes[:, 2:] / 2
    boxes[:, 2:] += boxes[:, :2]

    boxes[:, [0, 2]] *= w_img
    boxes[:, [1, 3]] *= h_img

    rects = boxes.astype(int)
    xywh = [[int(x0), int(y0), int(x1 - x0), int(y1 - y0)] for x0, y0, x1, y1 in rects]
    keep = cv2.dnn.NMSBoxes(xywh, scores.tolist(), conf_threshold, NMS_THRESHOLD)

    results = []
    for i in np.array(keep).flatten():
        x, y, w, h = xywh[i]
        x0 = max(0, x)
        y0 = max(0, y)
        w = min(w - (x0 - x), w_img - x0)
        h = min(h - (y0 - y), h_img - y0)
        if w <= 0 or h <= 0:
            continue
        results.append({
            'box': [x0, y0, w, h],
            'confidence': float(scores[i]),
        })
    return results


def generate_priors(input_shape):
    """
    Anchor boxes (cx, cy, w, h), normalized, for the RFB-320 feature maps.
    Ordered by feature map, then row, column and anchor size.
    """
    width, height = input_shape
    blocks = []
    for stride, sizes in zip(PRIOR_STRIDES, PRIOR_MIN_SIZES):
        fh, fw = ceil(height / stride), ceil(width / stride)
        cy, cx = np.meshgrid(
            (np.arange(fh) + 0.5) / fh,
            (np.arange(fw) + 0.5) / fw,
            indexing='ij'
        )
        centers = np.stack([cx.ravel(), cy.ravel()], axis=1)
        wh = np.array([[s / width, s / height] for s in sizes])
        blocks.append(np.hstack([
            np.repeat(centers, len(sizes), axis=0),
            np.tile(wh, (len(centers), 1)),
        ]))
    return np.vstack(blocks).astype(np.float32)
