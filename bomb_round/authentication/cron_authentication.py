import logging
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

security = HTTPBearer(auto_error=False)


class CronAuthentication:
    """Bearer check for the maintenance endpoints called by the scheduler host.

    Args:
        cron_secret (str | None): Expected token. When unset every call is accepted.
    """

    def __init__(self, cron_secret: str | None):
        self.cron_secret = cron_secret

    def check_token(self, credentials: HTTPAuthorizationCredentials | None) -> None:
        """Check the bearer token

        Raises:
            HTTPException: Token missing or different from CRON_SECRET
        """
        if not self.cron_secret:
            return
        if credentials is None or not secrets.compare_digest(credentials.credentials, self.cron_secret):
            logging.warning("Rejected maintenance call with an invalid bearer token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )


async def require_cron_token(
    request: Request, credentials: HTTPAuthorizationCredentials | None = Depends(security)
) -> None:
    request.app.state.cron_authentication.check_token(credentials)
