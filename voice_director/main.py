import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cache import TTLCache
from .errors import DialogueRefinementError
from .models import CharacterProfile, SceneContext
from .nodes.completion_client import OllamaClient
from .nodes.tag_parser import extract_speakers
from .nodes.tag_validator import validate_tag_balance
from .pipeline import run_pipeline

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger(__name__)

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
MODEL_NAME = os.getenv("MODEL_NAME", "llama3.1:70b")
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "50"))
PARALLELISM = int(os.getenv("PARALLELISM", "3"))
REQUEST_TIMEOUT_S = float(os.getenv("REQUEST_TIMEOUT_S", "120"))
RUN_TIMEOUT_S = float(os.getenv("RUN_TIMEOUT_S", "600"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "2"))
CACHE_TTL_S = float(os.getenv("CACHE_TTL_S", "3600"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "512"))
REANNOTATE_MISSING = os.getenv("REANNOTATE_MISSING", "true").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = OllamaClient(
        OLLAMA_BASE_URL,
        MODEL_NAME,
        timeout_s=REQUEST_TIMEOUT_S,
        max_retries=MAX_RETRIES,
        cache=TTLCache(max_entries=CACHE_MAX_ENTRIES, ttl_s=CACHE_TTL_S),
    )
    app.state.client = client
    log.info("Voice director ready: model=%s batch_size=%d parallelism=%d",
             MODEL_NAME, BATCH_SIZE, PARALLELISM)
    yield
    await client.aclose()


app = FastAPI(
    title="Voice Director",
    description="Splits [CHAR:Name] tagged prose into segments and directs their delivery",
    lifespan=lifespan,
)


class CharacterIn(BaseModel):
    name: str
    role: str = "supporting"
    age_group: str = "adult"
    default_emotion: Optional[str] = None
    base_stability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    base_style: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    speed_modifier: Optional[float] = Field(default=None, ge=0.5, le=2.0)
    emphasizes_key_words: bool = False
    uses_dramatic_pauses: bool = False


class AnnotateRequest(BaseModel):
    prose: str
    title: str = "Untitled Chapter"
    genre: Optional[str] = None
    mood: Optional[str] = None
    audience: str = "general"
    scene_description: str = ""
    narrator_baseline: list[str] = []
    characters: list[CharacterIn] = []
    upstream_emotions: dict[int, str] = {}


class AnnotateResponse(BaseModel):
    title: str
    segments: list[dict]
    validation: dict
    report: dict


class ValidateRequest(BaseModel):
    prose: str


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = await request.body()
    log.error("422 validation error on %s %s", request.method, request.url.path)
    log.error("Validation errors: %s", exc.errors())
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "body_preview": body.decode(errors="replace")[:500]},
    )


@app.post("/annotate", response_model=AnnotateResponse)
async def annotate(request: AnnotateRequest):
    log.info("POST /annotate: title=%r prose_length=%d characters=%d",
             request.title, len(request.prose), len(request.characters))

    scene = SceneContext(
        title=request.title,
        genre=request.genre,
        mood=request.mood,
        audience=request.audience,
        scene_description=request.scene_description,
        narrator_baseline=tuple(request.narrator_baseline),
    )
    characters = [CharacterProfile(**c.model_dump()) for c in request.characters]

    try:
        result = await run_pipeline(
            request.prose,
            scene,
            characters,
            client=app.state.client,
            batch_size=BATCH_SIZE,
            parallelism=PARALLELISM,
            timeout_s=RUN_TIMEOUT_S,
            reannotate=REANNOTATE_MISSING,
            upstream_emotions=request.upstream_emotions,
        )
    except DialogueRefinementError as e:
        log.error("Annotation failed: %s", e)
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "unresolved_indices": e.unresolved_indices},
        )

    return AnnotateResponse(
        title=result.title,
        segments=[s.to_dict() for s in result.segments],
        validation={"valid": result.validation.valid, "errors": result.validation.errors},
        report=result.report,
    )


@app.post("/validate")
async def validate(request: ValidateRequest):
    result = validate_tag_balance(request.prose)
    return {
        "valid": result.valid,
        "errors": result.errors,
        "speakers": extract_speakers(request.prose),
    }


@app.get("/health")
async def health():
    return {"status": "ok", "model": MODEL_NAME}


def main() -> None:
    import uvicorn

    uvicorn.run(
        "voice_director.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=LOG_LEVEL.lower(),
    )
