import os

from dotenv import load_dotenv

load_dotenv()  # reads .env in the cwd or project root

BASE = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# ---------- generation backends ----------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp-image-generation")
IMAGEN_MODEL = os.getenv("IMAGEN_MODEL", "imagen-3.0-generate-002")
IMAGEN_API_BASE = os.getenv("IMAGEN_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
EDIT_TIMEOUT_SECONDS = float(os.getenv("EDIT_TIMEOUT_SECONDS", "25"))

# "production" turns Imagen failures into a Gemini fallback
APP_ENV = os.getenv("APP_ENV", "development")

# ---------- persistence ----------
STORAGE_DIR = os.getenv("STORAGE_DIR", os.path.join(BASE, "storage"))
DATABASE_PATH = os.getenv("DATABASE_PATH", os.path.join(STORAGE_DIR, "app.db"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/")

# ---------- client shell ----------
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:5000").rstrip("/")


def is_production() -> bool:
    return APP_ENV.strip().lower() == "production"
