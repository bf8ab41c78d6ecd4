"""
הגנה על endpoints התפעוליים (אירועים כושלים, מצב התור, retry ידני).

המפתח נשלח ב-header X-Admin-API-Key ומושווה ל-ADMIN_API_KEY.
כשה-ADMIN_API_KEY ריק, כל ה-endpoints האלה סגורים (403).
"""
import hmac

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from payhook.core.config import settings
from payhook.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def _reject(request: Request, status_code: int, detail: str, reason: str) -> HTTPException:
    logger.warning(
        "Admin request rejected",
        extra_data={
            "reason": reason,
            "path": request.url.path,
            "client_host": request.client.host if request.client else None,
        },
    )
    return HTTPException(status_code=status_code, detail=detail)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> None:
    """401 כשהמפתח חסר, 403 כשהוא שגוי או כשלא הוגדר מפתח בסביבה"""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise _reject(request, status.HTTP_403_FORBIDDEN, "Admin API is disabled", "admin_key_not_configured")
    if not api_key:
        raise _reject(
            request, status.HTTP_401_UNAUTHORIZED, f"Missing {ADMIN_KEY_HEADER} header", "missing_key"
        )
    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        raise _reject(request, status.HTTP_403_FORBIDDEN, "Invalid admin API key", "invalid_key")
