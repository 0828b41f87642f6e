import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Depends, Form, UploadFile, File, HTTPException
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .auth import MAX_PASSWORD_BYTES, hash_password, verify_password
from .db import Base, SessionLocal, engine, get_db
from .errors import SnapKitError
from .gemini_client import generate_social_kit
from .models import Generation, Profile
from .schemas import ApiKeyUpdate, FreeGenerationStats, GenerateResponse, GenerationConfig
from .services.images import inspect_image
from .services.ledger import UsageLedger
from .services.pool import sync_pool
from .services.records import GenerationRecordStore
from .services.rotation import RotationController, SourceImage
from .storage import get_storage

logging.basicConfig(
    level=config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("snapkit")

os.makedirs(config.MEDIA_DIR, exist_ok=True)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        sync_pool(db, config.ADMIN_API_KEYS)
    finally:
        db.close()
    yield


app = FastAPI(title="SnapKit", lifespan=lifespan)
app.add_middleware(SessionMiddleware, secret_key=config.SECRET_KEY, same_site="lax", https_only=False)

# files written by LocalMediaStorage
app.mount("/media", StaticFiles(directory=config.MEDIA_DIR), name="media")


@app.exception_handler(SnapKitError)
async def snapkit_error_handler(request: Request, exc: SnapKitError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_invoker():
    return generate_social_kit


def get_current_user_id(request: Request) -> Optional[int]:
    return request.session.get("user_id")


def require_user(request: Request) -> int:
    uid = get_current_user_id(request)
    if not uid:
        raise HTTPException(status_code=401, detail="Not logged in")
    return uid


def generation_to_dict(gen: Generation) -> dict:
    return {
        "id": gen.id,
        "created_at": gen.created_at.isoformat() if gen.created_at else None,
        "inputs": gen.inputs,
        "results": gen.results,
        "api_key_source": gen.api_key_source,
        "image": {"url": gen.image.url, "public_id": gen.image.public_id} if gen.image else None,
    }


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/register")
def register(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db),
):
    username = username.strip()
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password required")

    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise HTTPException(status_code=400, detail="Password is too long. Please use 72 bytes or fewer.")

    exists = db.execute(select(Profile).where(Profile.username == username)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Username already exists")

    u = Profile(username=username, password_hash=hash_password(password), generations_limit=config.FREE_GENERATIONS_LIMIT)
    db.add(u)
    db.commit()
    db.refresh(u)

    request.session["user_id"] = u.id
    return {"id": u.id, "username": u.username}


@app.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db),
):
    u = db.execute(select(Profile).where(Profile.username == username.strip())).scalar_one_or_none()
    if not u or not verify_password(password, u.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")

    request.session["user_id"] = u.id
    return {"id": u.id, "username": u.username}


@app.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/me/stats", response_model=FreeGenerationStats)
def free_generation_stats(request: Request, db: Session = Depends(get_db)):
    user_id = require_user(request)
    return UsageLedger(db).stats(user_id)


@app.put("/me/api-key")
def set_api_key(body: ApiKeyUpdate, request: Request, db: Session = Depends(get_db)):
    user_id = require_user(request)
    UsageLedger(db).set_own_credential(user_id, body.api_key)
    return {"has_own_key": bool((body.api_key or "").strip())}


@app.delete("/me/api-key")
def clear_api_key(request: Request, db: Session = Depends(get_db)):
    user_id = require_user(request)
    UsageLedger(db).set_own_credential(user_id, None)
    return {"has_own_key": False}


@app.delete("/me")
def delete_account(request: Request, db: Session = Depends(get_db), storage=Depends(get_storage)):
    user_id = require_user(request)
    GenerationRecordStore(db, storage).delete_account(user_id)
    request.session.clear()
    return {"success": True}


@app.post("/generate", response_model=GenerateResponse)
def generate(
    request: Request,
    file: UploadFile = File(...),
    tone: str = Form("professional"),
    platforms: str = Form("Instagram"),
    include_emoji: bool = Form(True),
    language: str = Form("English"),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    invoke=Depends(get_invoker),
):
    user_id = require_user(request)

    try:
        gen_config = GenerationConfig(
            tone=tone,
            platforms=platforms.split(","),
            include_emoji=include_emoji,
            language=language.strip() or "English",
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    content = file.file.read()
    mime_type = inspect_image(content, config.MAX_UPLOAD_BYTES)

    controller = RotationController(db, storage, invoke=invoke)
    outcome = controller.generate(user_id, SourceImage(content, mime_type, file.filename or ""), gen_config)

    return {
        "id": outcome.record_id,
        "result": outcome.payload,
        "api_key_source": outcome.source,
        "free_generations_remaining": outcome.free_generations_remaining,
    }


@app.get("/history")
def history(request: Request, db: Session = Depends(get_db)):
    user_id = require_user(request)
    gens = GenerationRecordStore(db).list(user_id)
    return [generation_to_dict(g) for g in gens]


@app.get("/generation/{gen_id}")
def generation_detail(gen_id: int, request: Request, db: Session = Depends(get_db)):
    user_id = require_user(request)
    return generation_to_dict(GenerationRecordStore(db).get(gen_id, user_id))


@app.delete("/generation/{gen_id}")
def delete_generation(gen_id: int, request: Request, db: Session = Depends(get_db), storage=Depends(get_storage)):
    user_id = require_user(request)
    GenerationRecordStore(db, storage).delete(gen_id, user_id)
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
