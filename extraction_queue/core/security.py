from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from extraction_queue.core.config import get_settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def api_key_auth(api_key: str | None = Security(api_key_header)) -> str:
    if api_key != get_settings().API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    return api_key
