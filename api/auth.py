# api/auth.py
import os
import secrets
from fastapi import HTTPException, Security
from fastapi.security.api_key import APIKeyHeader
from dotenv import load_dotenv

load_dotenv()
API_KEY = os.getenv("API_KEY")
APIKEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=APIKEY_NAME, auto_error=False)


async def get_api_key(api_key_header: str = Security(api_key_header)):
    """
    Validate the operator API key from the X-API-Key header.

    Args:
        api_key_header (str): Value of the X-API-Key header

    Returns:
        str: The validated API key

    Raises:
        HTTPException: 503 if no API_KEY is configured on the server
        HTTPException: 401 if the header is missing
        HTTPException: 403 if the key does not match
    """
    if not API_KEY:
        raise HTTPException(status_code=503, detail="API key not configured")
    if not api_key_header:
        raise HTTPException(status_code=401, detail="Missing API Key")
    if not secrets.compare_digest(api_key_header, API_KEY):
        raise HTTPException(status_code=403, detail="Forbidden")
    return api_key_header
