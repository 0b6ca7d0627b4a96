"""Current-user lookup.

Authentication happens upstream; the auth layer stores the user id on
``request.state.current_user_id``. In testing mode an ``X-Test-User`` header
stands in for it.
"""

from fastapi import HTTPException, Request, status

from wns_payments.settings import settings

TEST_USER_HEADER = "X-Test-User"


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def get_current_user_id(request: Request) -> str | None:
    user_id = getattr(request.state, "current_user_id", None)
    if user_id:
        return str(user_id)
    if getattr(_app_settings(request), "testing", False):
        header_value = request.headers.get(TEST_USER_HEADER)
        if header_value and header_value.strip():
            return header_value.strip()
    return None


def require_current_user_id(request: Request) -> str:
    user_id = get_current_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="UNAUTHORIZED")
    return user_id
