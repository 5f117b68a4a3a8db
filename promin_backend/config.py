import os

from dotenv import load_dotenv

load_dotenv()

# CORS settings
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./promin.db")

# Apply a whole cascade in one transaction (true) or commit node by node (false)
CASCADE_ATOMIC = os.getenv("CASCADE_ATOMIC", "true").lower() in ("1", "true", "yes")

# Sibling weights summing to zero: "equal" splits 1/n, "zero" gives every sibling 0
WEIGHT_ZERO_POLICY = os.getenv("WEIGHT_ZERO_POLICY", "equal")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Uvicorn server settings
UVICORN_HOST = os.getenv("UVICORN_HOST", "0.0.0.0")
UVICORN_PORT = int(os.getenv("UVICORN_PORT", "8000"))
