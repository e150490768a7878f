from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]


class InferenceEngine(ABC):
    """Backend adapter interface.

    Implementations load a model once, report tensor shapes, and fill
    caller-owned output buffers in place. A single instance is not assumed
    to be safe for concurrent use.
    """

    @abstractmethod
    def load(self, model_path: str) -> None: ...

    @abstractmethod
    def input_shapes(self) -> List[Shape]: ...

    @abstractmethod
    def output_shapes(self) -> List[Shape]: ...

    @abstractmethod
    def run(self, inputs: Sequence[np.ndarray], outputs: Sequence[np.ndarray]) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


EngineFactory = Callable[[], InferenceEngine]


def allocate_outputs(shapes: Sequence[Shape]) -> List[np.ndarray]:
    return [np.zeros(tuple(int(d) for d in s), dtype=np.float32) for s in shapes]


# ------------------------------------------------------------
# TFLite adapter
# ------------------------------------------------------------
class TFLiteEngine(InferenceEngine):
    def __init__(self, delegate: Optional[str] = None, num_threads: Optional[int] = None):
        self.delegate = delegate or None
        self.num_threads = num_threads
        self.interp = None
        self._inputs: list = []
        self._outputs: list = []

    def load(self, model_path: str) -> None:
        try:
            from tflite_runtime.interpreter import Interpreter as TFLiteInterpreter  # type: ignore
            from tflite_runtime.interpreter import load_delegate  # type: ignore
        except ImportError as e:
            raise RuntimeError(
                "tflite-runtime is not installed. Install with: pip install 'posedet[tflite]'"
            ) from e

        delegates = []
        if self.delegate:
            try:
                delegates = [load_delegate(self.delegate, {})]
            except Exception as e:
                logger.warning("Failed to load delegate %s: %s. Falling back to CPU.", self.delegate, e)
                delegates = []
        self.interp = TFLiteInterpreter(
            model_path=model_path,
            experimental_delegates=delegates,
            num_threads=self.num_threads,
        )
        self.interp.allocate_tensors()
        self._inputs = self.interp.get_input_details()
        self._outputs = self.interp.get_output_details()
        logger.info("Loaded %s (%d inputs, %d outputs)", model_path, len(self._inputs), len(self._outputs))

    def input_shapes(self) -> List[Shape]:
        return [tuple(int(d) for d in i["shape"]) for i in self._inputs]

    def output_shapes(self) -> List[Shape]:
        return [tuple(int(d) for d in o["shape"]) for o in self._outputs]

    def run(self, inputs: Sequence[np.ndarray], outputs: Sequence[np.ndarray]) -> None:
        if self.interp is None:
            raise RuntimeError("Interpreter not loaded")
        for det, arr in zip(self._inputs, inputs):
            self.interp.set_tensor(det["index"], arr.astype(det["dtype"], copy=False))
        self.interp.invoke()
        for det, buf in zip(self._outputs, outputs):
            np.copyto(buf, self.interp.get_tensor(det["index"]).reshape(buf.shape), casting="unsafe")

    def close(self) -> None:
        self.interp = None
        self._inputs = []
        self._outputs = []


def tflite_factory(model_path: str, delegate: Optional[str] = None, num_threads: Optional[int] = None) -> EngineFactory:
    def _make() -> InferenceEngine:
        engine = TFLiteEngine(delegate=delegate, num_threads=num_threads)
        engine.load(model_path)
        return engine

    return _make
