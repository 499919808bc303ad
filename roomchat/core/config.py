# roomchat/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv

class Settings:
    """
    Setup environment variables.
        - STORE_BACKEND the remote document store: "firestore", "redis" or "memory"
        - FIREBASE_* the project and web API key of the identity provider
        - IMGBB_* the image host endpoint and its API key
        - IMAGE_* the attachment compression policy
    """

    # Load environment variables from the .env file
    load_dotenv()

    STORE_BACKEND: Literal["firestore", "redis", "memory"] = os.getenv("STORE_BACKEND", "firestore")

    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
    REDIS_TLS: bool = os.getenv("REDIS_TLS", "true").lower() == "true"

    FIREBASE_PROJECT_ID: str = os.getenv("FIREBASE_PROJECT_ID", "")
    FIREBASE_API_KEY: str = os.getenv("FIREBASE_API_KEY", "")

    IMGBB_API_KEY: str = os.getenv("IMGBB_API_KEY", "")
    IMGBB_UPLOAD_URL: str = os.getenv("IMGBB_UPLOAD_URL", "https://api.imgbb.com/1/upload")

    IMAGE_MAX_DIMENSION: int = int(os.getenv("IMAGE_MAX_DIMENSION", "1600"))
    IMAGE_QUALITY: float = float(os.getenv("IMAGE_QUALITY", "0.7"))

    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")
    COOKIE_SECURE: bool = os.getenv("COOKIE_SECURE", "false").lower() == "true"
    SESSION_MAX_AGE: int = int(os.getenv("SESSION_MAX_AGE", "3600"))

settings = Settings()
