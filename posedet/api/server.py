from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel

from posedet.config import PipelineConfig
from posedet.errors import ImageDecodeError, InferenceError, InvalidStateError, MalformedModelOutputError
from posedet.service.inference import InferenceService

logger = logging.getLogger(__name__)

# Per-request inference timeout (seconds); default 5s
INFER_TIMEOUT_SEC = float(os.getenv("INFER_TIMEOUT_SEC", "5"))
# Single worker; the landmark pool provides the parallelism inside a request
_EXECUTOR = ThreadPoolExecutor(max_workers=1)


class DetectRequest(BaseModel):
    image_path: str


class KeypointModel(BaseModel):
    name: str
    x: float
    y: float
    z: float
    score: float


class BoundingBoxModel(BaseModel):
    left: float
    top: float
    right: float
    bottom: float


class PoseModel(BaseModel):
    bounding_box: BoundingBoxModel
    score: float
    image_width: int
    image_height: int
    keypoints: List[KeypointModel]


class DetectResponse(BaseModel):
    poses: List[PoseModel]
    person_found: bool


def _error(status: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status, detail={"error_code": code, "message": message})


def create_app(config: Optional[PipelineConfig] = None, init_service: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_service:
            InferenceService.initialize(config or PipelineConfig.from_env())
        yield
        if init_service:
            InferenceService.shutdown()

    app = FastAPI(title="Pose Detection API", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/detect", response_model=DetectResponse)
    def detect(req: DetectRequest, response: Response):
        if not req.image_path:
            raise _error(400, "INVALID_REQUEST", "image_path is required")

        try:
            service = InferenceService.instance()
        except InvalidStateError:
            raise _error(503, "NOT_INITIALIZED", "Inference service is not initialized")

        # Inference with timeout and mapped error responses
        try:
            future = _EXECUTOR.submit(service.infer_poses, req.image_path)
            poses = future.result(timeout=INFER_TIMEOUT_SEC)
        except FuturesTimeoutError:
            raise _error(504, "INFERENCE_TIMEOUT", f"Inference exceeded {INFER_TIMEOUT_SEC:.1f}s")
        except FileNotFoundError:
            raise _error(404, "IMAGE_NOT_FOUND", f"Image not found: {req.image_path}")
        except ImageDecodeError:
            raise _error(400, "INVALID_IMAGE_FORMAT", "Unsupported or corrupt image")
        except InvalidStateError:
            raise _error(503, "NOT_INITIALIZED", "Inference service is not initialized")
        except MalformedModelOutputError as e:
            logger.error("Malformed model output: %s", e)
            raise _error(500, "MALFORMED_MODEL_OUTPUT", str(e))
        except InferenceError as e:
            logger.error("Inference failed: %s", e)
            raise _error(500, "INFERENCE_ERROR", str(e))
        except Exception as e:
            logger.exception("Unexpected inference failure")
            raise _error(500, "INFERENCE_ERROR", f"Inference failed: {e}")

        if not poses:
            response.headers["X-Pose-Status"] = "no_person"
        return DetectResponse(poses=[p.to_dict() for p in poses], person_found=bool(poses))

    return app


app = create_app()


# Convenience for `python -m posedet.api.server`
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("posedet.api.server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
