from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from facekiosk import config
from facekiosk import models
from facekiosk import utils
from facekiosk.inference import load_session
from facekiosk.log import get_logger, setup_logging
from facekiosk.models import Outcome, Status
from facekiosk.persistence import FaceStore, StoreNotReadyError
from facekiosk.processing import FaceRecognitionService

logger = get_logger(__name__)

# Absence outcomes are answered with 200 and a status the client branches on
STATUS_CODES = {
    Status.ENROLLED: 200,
    Status.MATCHED: 200,
    Status.NO_MATCH: 200,
    Status.NO_FACE: 200,
    Status.ALIGNMENT_FAILED: 200,
    Status.DUPLICATE: 409,
    Status.INVALID_IMAGE: 400,
    Status.INVALID_FEATURE: 400,
    Status.DIMENSION_MISMATCH: 400,
    Status.NOT_READY: 503,
    Status.STORE_ERROR: 503,
    Status.DECODE_FAILED: 500,
    Status.EMBEDDING_FAILED: 500,
}


def _respond(outcome: Outcome) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_CODES.get(outcome.status, 500),
        content=outcome.model_dump(mode="json"),
    )


def create_app(service: FaceRecognitionService) -> FastAPI:
    app = FastAPI(title="Face Kiosk API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/enroll", response_model=models.Outcome)
    async def enroll_face(file: UploadFile = File(...)):
        """Enrolls the largest face in the uploaded frame unless it is already known."""
        image_np_bgr = await utils.read_upload_image(file)
        outcome = service.enroll(image_np_bgr)
        logger.info("Enroll: %s (id=%d, similarity=%.4f)", outcome.status.value, outcome.face_id, outcome.similarity)
        return _respond(outcome)

    @app.post("/recognize", response_model=models.Outcome)
    async def recognize_face(file: UploadFile = File(...)):
        """Identifies the largest face in the uploaded frame."""
        image_np_bgr = await utils.read_upload_image(file)
        outcome = service.recognize(image_np_bgr)
        logger.info("Recognize: %s (id=%d, similarity=%.4f)", outcome.status.value, outcome.face_id, outcome.similarity)
        return _respond(outcome)

    @app.get("/faces/count", response_model=models.FaceCountResponse)
    async def face_count():
        """Returns the number of enrolled faces."""
        try:
            return {"count": service.store.count()}
        except (StoreNotReadyError, SQLAlchemyError) as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.delete("/faces", response_model=models.ClearResponse)
    async def clear_faces():
        """Deletes every enrolled face. Ids are not reused afterwards."""
        try:
            service.store.clear()
        except (StoreNotReadyError, SQLAlchemyError) as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"message": "Face database cleared"}

    return app


def build_service() -> FaceRecognitionService:
    """Loads both ONNX models and opens the face database."""
    config.check_model_files()
    detection_session = load_session(config.DETECTION_MODEL_PATH, config.PROVIDERS, name="detection")
    embedding_session = load_session(config.EMBEDDING_MODEL_PATH, config.PROVIDERS, name="embedding")

    store = FaceStore(config.DATABASE_URL)
    if not store.init():
        # Keep serving; kiosk actions report NOT_READY until the database is fixed
        logger.error("Face database failed to initialize: %s", config.DATABASE_URL)

    return FaceRecognitionService(detection_session, embedding_session, store)


# --- Main Execution ---
if __name__ == "__main__":
    import uvicorn

    setup_logging()
    service = build_service()
    logger.info("Detection model: %s", config.DETECTION_MODEL_PATH)
    logger.info("Embedding model: %s", config.EMBEDDING_MODEL_PATH)
    logger.info("Database: %s", config.DATABASE_URL)
    logger.info("Similarity threshold: %s", config.SIMILARITY_THRESHOLD)
    logger.info("ONNX Providers: %s", config.PROVIDERS)

    uvicorn.run(create_app(service), host="0.0.0.0", port=8000)
