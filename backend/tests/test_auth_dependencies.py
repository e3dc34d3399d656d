import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from jose import jwt


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


def _token(subject, *, expires_in=timedelta(minutes=15), secret=None, **claims):
    payload = {"exp": datetime.now(timezone.utc) + expires_in, **claims}
    if subject is not None:
        payload["sub"] = subject
    return jwt.encode(payload, secret or backend_main.JWT_SECRET_KEY, algorithm=backend_main.JWT_ALGORITHM)


def test_resolve_user_from_valid_token():
    user = backend_main.resolve_user_from_token(_token("user-42", role="admin"))

    assert user == backend_main.CurrentUser(id="user-42", role="admin")


def test_resolve_user_rejects_invalid_tokens():
    assert backend_main.resolve_user_from_token("not-a-valid-token") is None
    assert backend_main.resolve_user_from_token(_token("user-42", expires_in=timedelta(minutes=-5))) is None
    assert backend_main.resolve_user_from_token(_token("user-42", secret="other-secret")) is None
    assert backend_main.resolve_user_from_token(_token(None)) is None
    assert backend_main.resolve_user_from_token(_token("   ")) is None


def test_get_current_user_reads_cookie_then_bearer_header():
    from_cookie = backend_main.get_current_user(session_token=_token("cookie-user"), authorization=None)
    from_header = backend_main.get_current_user(
        session_token=None,
        authorization=f"Bearer {_token('header-user')}",
    )

    assert from_cookie.id == "cookie-user"
    assert from_header.id == "header-user"


@pytest.mark.parametrize(
    ("session_token", "authorization"),
    [
        (None, None),
        (None, "Basic dXNlcjpwYXNz"),
        (None, "Bearer "),
        ("not-a-valid-token", None),
    ],
)
def test_get_current_user_requires_authentication(session_token, authorization):
    with pytest.raises(HTTPException) as exc:
        backend_main.get_current_user(session_token=session_token, authorization=authorization)

    assert exc.value.status_code == 401


def test_connect_timeout_parsing():
    assert backend_main._parse_connect_timeout("2.5") == 3

    with pytest.raises(ValueError):
        backend_main._parse_connect_timeout("-1")
    with pytest.raises(ValueError):
        backend_main._parse_connect_timeout("soon")


def test_billing_routes_resolve_user_through_app_context():
    from backend import app_context
    from backend.app.routes import billing as billing_routes

    token = _token("context-user")
    try:
        app_context.reset()
        with pytest.raises(RuntimeError):
            billing_routes._get_current_user(session_token=token, authorization=None)

        app_context.configure(get_conn=backend_main.get_conn, get_current_user=backend_main.get_current_user)
        user = billing_routes._get_current_user(session_token=token, authorization=None)
    finally:
        app_context.configure(get_conn=backend_main.get_conn, get_current_user=backend_main.get_current_user)

    assert user.id == "context-user"
