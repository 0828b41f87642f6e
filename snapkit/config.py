import os
from dotenv import load_dotenv

load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./snapkit.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Gemini through its OpenAI-compatible endpoint
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "gemini-2.5-flash")
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60"))

MAX_GENERATION_ATTEMPTS = int(os.getenv("MAX_GENERATION_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.3"))
FREE_GENERATIONS_LIMIT = int(os.getenv("FREE_GENERATIONS_LIMIT", "3"))

# comma separated, e.g. "AIza...,AIza..."
ADMIN_API_KEYS = [k.strip() for k in os.getenv("ADMIN_API_KEYS", "").split(",") if k.strip()]

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")  # local|cloudinary
MEDIA_DIR = os.getenv("MEDIA_DIR", "./media")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")
CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "snapkit_v2")
