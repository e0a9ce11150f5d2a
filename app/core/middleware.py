from fastapi import HTTPException, status, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.core.firebase import verify_firebase_token
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency resolving the caller from a Firebase ID token.
    The uid doubles as the subscription key.
    """
    try:
        decoded_token = verify_firebase_token(credentials.credentials)
    except Exception as e:
        logger.error(f"get_current_user: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decoded_token.get('uid')
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.user_id = user_id
    return {
        'uid': user_id,
        'email': decoded_token.get('email'),
        'token': decoded_token
    }
