# api/rate_limit.py
import os
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from fastapi import FastAPI
from dotenv import load_dotenv

load_dotenv()
READ_LIMIT = os.getenv("API_READ_LIMIT", "100/hour")
TRIGGER_LIMIT = os.getenv("API_TRIGGER_LIMIT", "10/hour")

limiter = Limiter(key_func=get_remote_address)


def register_rate_limit(app: FastAPI):
    """
    Attach the slowapi limiter and its 429 handler to the app.

    Read endpoints use READ_LIMIT; requesting a pass uses the stricter
    TRIGGER_LIMIT since every accepted request starts a full catalog pass.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
