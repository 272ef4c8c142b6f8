# faceclock/core/tflite_helper.py
"""
TFLite interpreter loading.

Prefers tflite_runtime (light, for the Pi) and falls back to the full
tensorflow package. Model paths may be local files or http(s) URLs; remote
models are downloaded into the model cache directory first.
"""
import os
import time
import logging
import hashlib
from urllib.parse import urlparse

import requests

from .errors import ModelAssetsMissingError, ModelDownloadError, UnsupportedRuntimeError
from .settings import settings

logger = logging.getLogger(__name__)

_logged_runtime = False


def _interpreter_class():
    """Return the Interpreter class of the first TFLite runtime available."""
    try:
        from tflite_runtime.interpreter import Interpreter
        return Interpreter, "tflite_runtime"
    except ImportError:
        pass

    try:
        import tensorflow as tf
        return tf.lite.Interpreter, "tensorflow.lite"
    except ImportError:
        pass

    raise UnsupportedRuntimeError(
        "No TFLite interpreter found. Install one of:\n"
        "  - pip install tflite-runtime  (light, for the Pi)\n"
        "  - pip install tensorflow       (full, for a PC)"
    )


def runtime_available() -> bool:
    try:
        _interpreter_class()
    except UnsupportedRuntimeError:
        return False
    return True


def is_remote(model_path: str) -> bool:
    return urlparse(model_path).scheme in ("http", "https")


def fetch_model(url, cache_dir=None, retries=None, retry_delay=None, timeout=None):
    """
    Download a model into the cache directory, reusing a cached copy.
    Retries with exponential backoff.

    Returns:
        Local path of the model file.
    """
    cache_dir = cache_dir or os.path.join(settings.BASE_DIR, settings.MODEL_CACHE_DIR)
    retries = settings.MODEL_LOAD_RETRIES if retries is None else retries
    retry_delay = settings.MODEL_RETRY_DELAY if retry_delay is None else retry_delay
    timeout = settings.HTTP_TIMEOUT if timeout is None else timeout

    name = os.path.basename(urlparse(url).path) or "model.tflite"
    digest = hashlib.sha1(url.encode('utf-8')).hexdigest()[:12]
    local_path = os.path.join(cache_dir, f"{digest}-{name}")
    if os.path.exists(local_path):
        return local_path

    os.makedirs(cache_dir, exist_ok=True)
    last_error = None
    for attempt in range(max(1, retries)):
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            tmp_path = local_path + ".part"
            with open(tmp_path, 'wb') as f:
                f.write(response.content)
            os.replace(tmp_path, local_path)
            logger.info(f"[TFLite] Downloaded {url} -> {local_path}")
            return local_path
        except requests.RequestException as e:
            last_error = e
            logger.warning(f"[TFLite] Download attempt {attempt + 1}/{retries} failed: {e}")
            if attempt < retries - 1:
                time.sleep(retry_delay * (2 ** attempt))

    raise ModelDownloadError(url, last_error)


def get_interpreter(model_path, num_threads=None):
    """
    Create a TFLite Interpreter for model_path.

    Raises:
        ModelAssetsMissingError: local file does not exist
        ModelDownloadError: remote model could not be fetched
        UnsupportedRuntimeError: no runtime, or the runtime rejected the file
    """
    global _logged_runtime

    if num_threads is None:
        num_threads = settings.tflite_num_threads

    if is_remote(model_path):
        model_path = fetch_model(model_path)
    elif not os.path.exists(model_path):
        raise ModelAssetsMissingError(model_path)

    interpreter_cls, runtime_name = _interpreter_class()
    if not _logged_runtime:
        logger.info(f"[TFLite] Using {runtime_name} (threads={num_threads})")
        _logged_runtime = True

    try:
        return interpreter_cls(model_path=model_path, num_threads=num_threads)
    except (ValueError, RuntimeError) as e:
        raise UnsupportedRuntimeError(f"{runtime_name} cannot load {model_path}: {e}") from e


def quantization(detail, default_scale=1.0, default_zero_point=0):
    """(scale, zero_point) of a tensor detail, falling back to the defaults."""
    params = detail.get('quantization_parameters') or {}
    scales = params.get('scales')
    zero_points = params.get('zero_points')
    scale = float(scales[0]) if scales is not None and len(scales) > 0 else default_scale
    zero_point = int(zero_points[0]) if zero_points is not None and len(zero_points) > 0 else default_zero_point
    return scale, zero_point
